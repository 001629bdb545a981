"""
Database Package - SQLAlchemy
=============================

Persistence layer for disciplinary cases.
"""

from .models import (
    Base,
    DisciplinaryCase, CaseEvent,
    IssueCategory, IssueSource, CaseStatus, ActionOutcome, CaseVisibility, CaseEventType,
)
from .session import get_db, init_db, get_engine, reset_engine

__all__ = [
    # Base
    "Base",
    # Cases
    "DisciplinaryCase", "CaseEvent",
    # Enums
    "IssueCategory", "IssueSource", "CaseStatus", "ActionOutcome", "CaseVisibility", "CaseEventType",
    # Session
    "get_db", "init_db", "get_engine", "reset_engine",
]
