"""
Pydantic Schemas for the Disciplinary Case API
==============================================

Request bodies, filters and responses. Evidence fields accept plain strings:
http(s) URLs are kept as references, anything else is treated as inline
base64 content and uploaded.
"""

from typing import List, Optional
from pydantic import BaseModel, Field
from datetime import datetime

from .db.models import (
    IssueCategory,
    IssueSource,
    CaseStatus,
    ActionOutcome,
    CaseVisibility,
    CaseEventType,
)


# =============================================================================
# INPUT SCHEMAS
# =============================================================================

class CreateCaseRequest(BaseModel):
    """Request to open a disciplinary case"""
    subject_name: str = Field(..., max_length=255, description="Name of the person the case concerns")
    position: str = Field(..., max_length=255, description="Subject's position in the organisation")
    constituency: Optional[str] = Field(None, max_length=255)
    district: Optional[str] = Field(None, max_length=255)
    photo_url: Optional[str] = Field(None, description="Subject photo: URL or base64 image")
    category: IssueCategory
    description: str = Field(..., description="What the case is about")
    source: IssueSource
    evidence_urls: List[str] = Field(default_factory=list, description="Document URLs or base64 payloads")
    image_urls: List[str] = Field(default_factory=list, description="Image URLs or base64 payloads")
    source_links: List[str] = Field(default_factory=list, description="External links, stored as given")

    class Config:
        json_schema_extra = {
            "example": {
                "subject_name": "A. Leader",
                "position": "District Secretary",
                "district": "North",
                "category": "MISCONDUCT",
                "description": "Public altercation at a party rally",
                "source": "MEDIA_REPORT",
                "image_urls": ["https://ik.imagekit.io/demo/rally.jpg"],
                "source_links": ["https://news.example.com/story"],
            }
        }


class UpdateCaseRequest(BaseModel):
    """Partial edit of subject, issue and evidence fields"""
    subject_name: Optional[str] = Field(None, max_length=255)
    position: Optional[str] = Field(None, max_length=255)
    constituency: Optional[str] = Field(None, max_length=255)
    district: Optional[str] = Field(None, max_length=255)
    photo_url: Optional[str] = None
    category: Optional[IssueCategory] = None
    description: Optional[str] = None
    source: Optional[IssueSource] = None
    evidence_urls: Optional[List[str]] = None
    image_urls: Optional[List[str]] = None
    source_links: Optional[List[str]] = None


class UpdateCaseStatusRequest(BaseModel):
    """Move a case to another status"""
    status: CaseStatus
    internal_notes: Optional[str] = Field(None, description="Appended to the internal note log")
    review_authority: Optional[str] = None
    review_start_date: Optional[datetime] = None


class RecordDecisionRequest(BaseModel):
    """Record the ruling on a case"""
    action_outcome: ActionOutcome
    decision_rationale: Optional[str] = None
    effective_from: Optional[datetime] = None
    effective_to: Optional[datetime] = None


class UpdateVisibilityRequest(BaseModel):
    visibility: CaseVisibility


class AddNoteRequest(BaseModel):
    note: str = Field(..., min_length=1)


class AddImagesRequest(BaseModel):
    images: List[str] = Field(..., description="Image URLs (ignored) or base64 payloads (uploaded)")


class CaseFilter(BaseModel):
    """Listing filter; visibility is only honoured for privileged callers"""
    status: Optional[CaseStatus] = None
    category: Optional[IssueCategory] = None
    visibility: Optional[CaseVisibility] = None
    search: Optional[str] = Field(None, description="Case-insensitive match on case number or subject name")


# =============================================================================
# OUTPUT SCHEMAS
# =============================================================================

class CaseResponse(BaseModel):
    """Case as returned to callers; internal_notes is None for non-privileged roles"""
    id: str
    case_number: str
    subject_name: str
    position: str
    photo_url: Optional[str] = None
    constituency: Optional[str] = None
    district: Optional[str] = None
    category: IssueCategory
    description: str
    source: IssueSource
    initiation_date: datetime
    review_start_date: Optional[datetime] = None
    decision_date: Optional[datetime] = None
    effective_from: Optional[datetime] = None
    effective_to: Optional[datetime] = None
    initiated_by: str
    review_authority: Optional[str] = None
    decision_authority: Optional[str] = None
    status: CaseStatus
    action_outcome: Optional[ActionOutcome] = None
    visibility: CaseVisibility
    evidence_urls: List[str] = []
    image_urls: List[str] = []
    source_links: List[str] = []
    internal_notes: Optional[str] = None
    decision_rationale: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CaseEventResponse(BaseModel):
    id: str
    case_id: str
    event_type: CaseEventType
    actor_id: Optional[str] = None
    details: dict = {}
    occurred_at: datetime


class HealthResponse(BaseModel):
    """Health check response"""
    status: str = Field(..., description="Service status")
    version: str = Field(..., description="Service version")
    storage_backend: str
    timestamp: datetime = Field(..., description="Current timestamp")


class ErrorResponse(BaseModel):
    """Error body for every handled failure"""
    detail: str = Field(..., description="Human-readable message")
    error: str = Field(..., description="Machine-readable error kind")
