"""
Disciplinary Case Service API
=============================

FastAPI endpoints for the disciplinary case lifecycle.

Endpoints (prefix /api/v1):
- GET    /cases                    - List cases (non-admins see public cases only)
- GET    /cases/{case_id}          - Get one case
- POST   /cases                    - Open a case (admin)
- PATCH  /cases/{case_id}          - Edit subject / issue / evidence (admin)
- POST   /cases/{case_id}/status   - Change status, optionally append a note (admin)
- POST   /cases/{case_id}/decision - Record a decision (admin)
- PUT    /cases/{case_id}/visibility - Change visibility (super admin)
- POST   /cases/{case_id}/notes    - Append an internal note (admin)
- POST   /cases/{case_id}/images   - Upload additional images (admin)
- GET    /cases/{case_id}/events   - Audit trail (admin)
- GET    /health                   - Health check

Identity comes from `Authorization: Bearer <jwt>` or, behind a trusted
gateway, from the X-User-Id / X-User-Role headers.

Run with:
    uvicorn discipline_lite.api:app --host 0.0.0.0 --port 8000
"""

import logging
from datetime import datetime
from typing import List, Optional

import jwt
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.orm import Session

from .config import get_settings
from .db.models import CaseStatus, CaseVisibility, IssueCategory
from .db.session import get_db, init_db
from .errors import CaseServiceError
from .evidence import EvidenceIngestor
from .policy import Actor, ActorRole, CaseAction, require
from .repository import CaseRepository
from .schemas import (
    AddImagesRequest,
    AddNoteRequest,
    CaseEventResponse,
    CaseFilter,
    CaseResponse,
    CreateCaseRequest,
    ErrorResponse,
    HealthResponse,
    RecordDecisionRequest,
    UpdateCaseRequest,
    UpdateCaseStatusRequest,
    UpdateVisibilityRequest,
)
from .service import CaseLifecycleService
from .storage import BlobStore, close_storage, get_storage

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# =============================================================================
# FastAPI App
# =============================================================================

settings = get_settings()

app = FastAPI(
    title="Disciplinary Case Service",
    description="Lifecycle management for disciplinary cases: intake, review, decision and publication",
    version=settings.service_version,
    docs_url="/docs",
    redoc_url="/redoc",
)

CORS_ALLOW_ORIGINS = settings.cors_origins()
logger.info(f"CORS allow origins: {CORS_ALLOW_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)

# Local blob store output is served back under /uploads
if settings.storage_backend == "local":
    app.mount(
        "/uploads",
        StaticFiles(directory=settings.local_storage_dir, check_dir=False),
        name="uploads",
    )


# =============================================================================
# Dependencies
# =============================================================================

async def get_actor(
    authorization: Optional[str] = Header(None, alias="Authorization"),
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_user_role: Optional[str] = Header(None, alias="X-User-Role"),
) -> Actor:
    """
    Resolve the calling principal from either:
    - `Authorization: Bearer <jwt>` (sub + role claims), preferred when present
    - `X-User-Id` / `X-User-Role` set by a trusted gateway
    Anything else is an unauthenticated caller.
    """
    current = get_settings()

    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        try:
            payload = jwt.decode(token, current.jwt_secret_key, algorithms=[current.jwt_algorithm])
        except jwt.PyJWTError as e:
            logger.warning(f"Invalid JWT token: {e}")
            raise HTTPException(status_code=401, detail="Invalid or expired token")
        if not payload.get("sub"):
            raise HTTPException(status_code=401, detail="Token has no subject")
        return Actor(id=payload["sub"], role=ActorRole.parse(payload.get("role") or "member"))

    if current.trust_identity_headers and (x_user_id or x_user_role):
        if not x_user_id:
            raise HTTPException(status_code=401, detail="X-User-Id header required")
        return Actor(id=x_user_id, role=ActorRole.parse(x_user_role or "member"))

    return Actor.anonymous()


def require_action(action: CaseAction):
    """Dependency factory: reject the request before dispatch if the role is too low."""
    async def dependency(actor: Actor = Depends(get_actor)) -> Actor:
        require(actor.role, action)
        return actor

    return dependency


def get_blob_store() -> BlobStore:
    return get_storage()


def get_case_service(
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
) -> CaseLifecycleService:
    current = get_settings()
    return CaseLifecycleService(
        repository=CaseRepository(db, max_attempts=current.append_max_attempts),
        ingestor=EvidenceIngestor(blob_store, upload_timeout=current.upload_timeout_seconds),
        settings=current,
        logger=logging.getLogger("discipline_lite.service"),
    )


# =============================================================================
# Case Endpoints
# =============================================================================

router = APIRouter(prefix="/cases", tags=["Disciplinary Cases"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid input"},
    403: {"model": ErrorResponse, "description": "Not allowed"},
    404: {"model": ErrorResponse, "description": "Case not found"},
}


@router.get("", response_model=List[CaseResponse])
async def list_cases(
    status: Optional[CaseStatus] = Query(None),
    category: Optional[IssueCategory] = Query(None),
    visibility: Optional[CaseVisibility] = Query(None),
    search: Optional[str] = Query(None),
    actor: Actor = Depends(require_action(CaseAction.LIST)),
    service: CaseLifecycleService = Depends(get_case_service),
):
    """List cases, newest first. Non-admin callers only ever see PUBLIC cases."""
    case_filter = CaseFilter(status=status, category=category, visibility=visibility, search=search)
    cases = service.list_cases(case_filter, actor)
    return [service.to_response(case, actor) for case in cases]


@router.get("/{case_id}", response_model=CaseResponse, responses=ERROR_RESPONSES)
async def get_case(
    case_id: str,
    actor: Actor = Depends(require_action(CaseAction.READ)),
    service: CaseLifecycleService = Depends(get_case_service),
):
    case = service.get_case(case_id, actor)
    return service.to_response(case, actor)


@router.post("", response_model=CaseResponse, status_code=201, responses=ERROR_RESPONSES)
async def create_case(
    request: CreateCaseRequest,
    actor: Actor = Depends(require_action(CaseAction.CREATE)),
    service: CaseLifecycleService = Depends(get_case_service),
):
    """
    Open a disciplinary case.

    Evidence strings that are http(s) URLs are stored as given; anything else
    is decoded as base64 and uploaded first.
    """
    case = await service.create_case(request, actor)
    return service.to_response(case, actor)


@router.patch("/{case_id}", response_model=CaseResponse, responses=ERROR_RESPONSES)
async def update_case(
    case_id: str,
    request: UpdateCaseRequest,
    actor: Actor = Depends(require_action(CaseAction.UPDATE)),
    service: CaseLifecycleService = Depends(get_case_service),
):
    case = await service.update_case(case_id, request, actor)
    return service.to_response(case, actor)


@router.post("/{case_id}/status", response_model=CaseResponse, responses=ERROR_RESPONSES)
async def update_case_status(
    case_id: str,
    request: UpdateCaseStatusRequest,
    actor: Actor = Depends(require_action(CaseAction.TRANSITION_STATUS)),
    service: CaseLifecycleService = Depends(get_case_service),
):
    case = service.transition_status(
        case_id,
        request.status,
        actor,
        notes=request.internal_notes,
        review_authority=request.review_authority,
        review_start_date=request.review_start_date,
    )
    return service.to_response(case, actor)


@router.post("/{case_id}/decision", response_model=CaseResponse, responses=ERROR_RESPONSES)
async def record_decision(
    case_id: str,
    request: RecordDecisionRequest,
    actor: Actor = Depends(require_action(CaseAction.RECORD_DECISION)),
    service: CaseLifecycleService = Depends(get_case_service),
):
    case = service.record_decision(
        case_id,
        request.action_outcome,
        actor,
        rationale=request.decision_rationale,
        effective_from=request.effective_from,
        effective_to=request.effective_to,
    )
    return service.to_response(case, actor)


@router.put("/{case_id}/visibility", response_model=CaseResponse, responses=ERROR_RESPONSES)
async def update_visibility(
    case_id: str,
    request: UpdateVisibilityRequest,
    actor: Actor = Depends(require_action(CaseAction.CHANGE_VISIBILITY)),
    service: CaseLifecycleService = Depends(get_case_service),
):
    case = service.change_visibility(case_id, request.visibility, actor)
    return service.to_response(case, actor)


@router.post("/{case_id}/notes", response_model=CaseResponse, responses=ERROR_RESPONSES)
async def add_note(
    case_id: str,
    request: AddNoteRequest,
    actor: Actor = Depends(require_action(CaseAction.APPEND_NOTE)),
    service: CaseLifecycleService = Depends(get_case_service),
):
    case = service.append_note(case_id, request.note, actor)
    return service.to_response(case, actor)


@router.post("/{case_id}/images", response_model=CaseResponse, responses=ERROR_RESPONSES)
async def add_images(
    case_id: str,
    request: AddImagesRequest,
    actor: Actor = Depends(require_action(CaseAction.APPEND_IMAGES)),
    service: CaseLifecycleService = Depends(get_case_service),
):
    """Upload base64 images and attach them. URL entries are ignored."""
    case = await service.append_images(case_id, request.images, actor)
    return service.to_response(case, actor)


@router.get("/{case_id}/events", response_model=List[CaseEventResponse], responses=ERROR_RESPONSES)
async def list_case_events(
    case_id: str,
    actor: Actor = Depends(require_action(CaseAction.VIEW_INTERNAL)),
    service: CaseLifecycleService = Depends(get_case_service),
):
    events = service.list_events(case_id, actor)
    return [
        CaseEventResponse(
            id=event.id,
            case_id=event.case_id,
            event_type=event.event_type,
            actor_id=event.actor_id,
            details=event.details or {},
            occurred_at=event.occurred_at,
        )
        for event in events
    ]


app.include_router(router, prefix="/api/v1")


# =============================================================================
# Health
# =============================================================================

@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint"""
    current = get_settings()
    return HealthResponse(
        status="healthy",
        version=current.service_version,
        storage_backend=current.storage_backend,
        timestamp=datetime.now(),
    )


# =============================================================================
# Lifecycle
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Initialize on startup"""
    current = get_settings()
    logger.info(f"Starting Disciplinary Case Service v{current.service_version}")
    logger.info(f"Storage backend: {current.storage_backend}")
    for warning in current.validate_storage_config():
        logger.warning(warning)
    init_db()


@app.on_event("shutdown")
async def shutdown_event():
    await close_storage()


# =============================================================================
# Error Handling
# =============================================================================

@app.exception_handler(CaseServiceError)
async def case_service_exception_handler(request: Request, exc: CaseServiceError):
    """Map service errors onto their HTTP status with a uniform body."""
    if exc.status_code >= 500:
        logger.error(f"{exc.kind} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.kind},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler - always return valid JSON"""
    logger.exception(f"Unhandled exception on {request.url.path}: {exc.__class__.__name__}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "error": "internal"},
    )


# =============================================================================
# Main (for direct execution)
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
