"""
SQLAlchemy Models for Database
==============================

Schema for the disciplinary case lifecycle:
- Disciplinary cases (subject, issue, timeline, authorities, outcome, evidence)
- Case events (audit trail of every lifecycle mutation)

Supports both PostgreSQL and SQLite via SQLAlchemy.
"""

import enum
from datetime import datetime
from sqlalchemy import (
    Column, String, Text, Integer, DateTime, Enum, ForeignKey, Index, JSON
)
from sqlalchemy.orm import relationship, declarative_base
import uuid

# Use JSON for cross-database compatibility (works with both PostgreSQL and SQLite)
JSONB = JSON

Base = declarative_base()


def generate_uuid():
    return str(uuid.uuid4())


# =============================================================================
# ENUMS
# =============================================================================

class IssueCategory(str, enum.Enum):
    """Category of disciplinary issue"""
    MISCONDUCT = "MISCONDUCT"
    POLICY_VIOLATION = "POLICY_VIOLATION"
    ETHICAL_BREACH = "ETHICAL_BREACH"
    INSUBORDINATION = "INSUBORDINATION"
    FINANCIAL_IRREGULARITY = "FINANCIAL_IRREGULARITY"
    PUBLIC_STATEMENT_VIOLATION = "PUBLIC_STATEMENT_VIOLATION"
    OTHER = "OTHER"


class IssueSource(str, enum.Enum):
    """Where the issue was raised"""
    INTERNAL_COMPLAINT = "INTERNAL_COMPLAINT"
    EXTERNAL_COMPLAINT = "EXTERNAL_COMPLAINT"
    MEDIA_REPORT = "MEDIA_REPORT"
    PARTY_OBSERVATION = "PARTY_OBSERVATION"
    LEGAL_NOTICE = "LEGAL_NOTICE"


class CaseStatus(str, enum.Enum):
    """Case lifecycle status"""
    UNDER_REVIEW = "UNDER_REVIEW"
    CLARIFICATION_REQUIRED = "CLARIFICATION_REQUIRED"
    REVIEW_COMPLETED = "REVIEW_COMPLETED"
    ACTION_TAKEN = "ACTION_TAKEN"
    CLOSED = "CLOSED"
    ARCHIVED = "ARCHIVED"


class ActionOutcome(str, enum.Enum):
    """Outcome recorded with a decision"""
    NO_ACTION = "NO_ACTION"
    WARNING = "WARNING"
    TEMPORARY_SUSPENSION = "TEMPORARY_SUSPENSION"
    PERMANENT_SUSPENSION = "PERMANENT_SUSPENSION"
    POSITION_REVOKED = "POSITION_REVOKED"
    MEMBERSHIP_REVOKED = "MEMBERSHIP_REVOKED"


class CaseVisibility(str, enum.Enum):
    """Read-access tier of a case"""
    INTERNAL_ONLY = "INTERNAL_ONLY"
    PUBLIC = "PUBLIC"
    RESTRICTED = "RESTRICTED"


class CaseEventType(str, enum.Enum):
    """Audit trail event types"""
    CASE_CREATED = "case_created"
    CASE_UPDATED = "case_updated"
    STATUS_CHANGED = "status_changed"
    DECISION_RECORDED = "decision_recorded"
    VISIBILITY_CHANGED = "visibility_changed"
    NOTE_ADDED = "note_added"
    IMAGES_ADDED = "images_added"


# =============================================================================
# CASE MODELS
# =============================================================================

class DisciplinaryCase(Base):
    """Disciplinary case opened against a subject"""
    __tablename__ = "disciplinary_cases"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_number = Column(String(32), nullable=False, unique=True)

    # Subject (plain fields, no link to a leader record)
    subject_name = Column(String(255), nullable=False)
    position = Column(String(255), nullable=False)
    photo_url = Column(Text, nullable=True)
    constituency = Column(String(255), nullable=True)
    district = Column(String(255), nullable=True)

    # Issue
    category = Column(Enum(IssueCategory), nullable=False)
    description = Column(Text, nullable=False)
    source = Column(Enum(IssueSource), nullable=False)

    # Timeline
    initiation_date = Column(DateTime, default=datetime.utcnow, nullable=False)
    review_start_date = Column(DateTime, nullable=True)
    decision_date = Column(DateTime, nullable=True)
    effective_from = Column(DateTime, nullable=True)
    effective_to = Column(DateTime, nullable=True)

    # Authorities (actor ids supplied by the identity provider)
    initiated_by = Column(String(64), nullable=False)
    review_authority = Column(String(64), nullable=True)
    decision_authority = Column(String(64), nullable=True)

    # Outcome
    status = Column(Enum(CaseStatus), default=CaseStatus.UNDER_REVIEW, nullable=False)
    action_outcome = Column(Enum(ActionOutcome), nullable=True)
    visibility = Column(Enum(CaseVisibility), default=CaseVisibility.INTERNAL_ONLY, nullable=False)

    # Evidence (resolved references only)
    evidence_urls = Column(JSONB, default=list, nullable=False)
    image_urls = Column(JSONB, default=list, nullable=False)
    source_links = Column(JSONB, default=list, nullable=False)

    # Narrative
    internal_notes = Column(Text, nullable=True)
    decision_rationale = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    version = Column(Integer, nullable=False)

    __table_args__ = (
        Index("ix_disciplinary_case_status", "status"),
        Index("ix_disciplinary_case_visibility", "visibility"),
        Index("ix_disciplinary_case_initiation", "initiation_date"),
    )
    # Every UPDATE carries "WHERE version = :seen"; a stale writer gets StaleDataError.
    __mapper_args__ = {"version_id_col": version}

    # Relationships
    events = relationship(
        "CaseEvent",
        back_populates="case",
        cascade="all, delete-orphan",
        order_by="CaseEvent.occurred_at",
    )


class CaseEvent(Base):
    """Lifecycle event for the audit trail"""
    __tablename__ = "case_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("disciplinary_cases.id", ondelete="CASCADE"), nullable=False)
    event_type = Column(Enum(CaseEventType), nullable=False)
    actor_id = Column(String(64), nullable=True)
    details = Column(JSONB, default=dict)
    occurred_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_case_event_case", "case_id", "occurred_at"),
    )

    case = relationship("DisciplinaryCase", back_populates="events")
