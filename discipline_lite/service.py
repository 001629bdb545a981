"""
Disciplinary Case Lifecycle Service
===================================

Orchestrates the case lifecycle on top of the repository, the evidence
ingestor, the case number generator and the access policy:

- create_case        open a case (admin+)
- get_case           read one case (visibility gated)
- list_cases         filtered listing (non-privileged callers see public cases only)
- update_case        edit subject/issue/evidence fields (admin+)
- transition_status  move to any status (admin+); an optional guard can restrict moves
- record_decision    record outcome + rationale, forces ACTION_TAKEN (admin+)
- change_visibility  set the read tier (super admin)
- append_note        grow the internal note log (admin+)
- append_images      upload and attach more photos (admin+)
- list_events        audit trail (admin+)

The acting principal is always passed in explicitly; nothing is read from
request globals.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .case_numbers import CaseNumberGenerator
from .config import Settings, get_settings
from .db.models import (
    ActionOutcome, CaseEvent, CaseEventType, CaseStatus, CaseVisibility, DisciplinaryCase,
)
from .errors import CaseNotFoundError, CaseValidationError
from .evidence import EvidenceIngestor, IngestPolicy, document_policy, image_policy, photo_policy
from .policy import Actor, CaseAction, can_view_internal_notes, require, visibility_filter
from .repository import CaseRepository, DuplicateCaseNumberError, EventDraft
from .schemas import CaseFilter, CaseResponse, CreateCaseRequest, UpdateCaseRequest

TransitionGuard = Callable[[CaseStatus, CaseStatus], None]

REQUIRED_CREATE_FIELDS = ("subject_name", "position", "description")
EDITABLE_TEXT_FIELDS = ("subject_name", "position", "constituency", "district", "description")


class CaseLifecycleService:
    """Implements every disciplinary case operation for one unit of work."""

    def __init__(
        self,
        repository: CaseRepository,
        ingestor: EvidenceIngestor,
        number_generator: Optional[CaseNumberGenerator] = None,
        logger: Optional[logging.Logger] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        transition_guard: Optional[TransitionGuard] = None,
    ):
        self.settings = settings or get_settings()
        self.repository = repository
        self.ingestor = ingestor
        self.number_generator = number_generator or CaseNumberGenerator(
            prefix=self.settings.case_number_prefix, clock=clock
        )
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self.transition_guard = transition_guard

        self.image_policy = image_policy(self.settings)
        self.photo_policy = photo_policy(self.settings)
        self.document_policy = document_policy(self.settings)

    # =========================================================================
    # Reads
    # =========================================================================

    def get_case(self, case_id: str, actor: Actor) -> DisciplinaryCase:
        case = self._load(case_id)
        require(actor.role, CaseAction.READ, case.visibility)
        return case

    def list_cases(self, case_filter: Optional[CaseFilter], actor: Actor) -> List[DisciplinaryCase]:
        require(actor.role, CaseAction.LIST)
        effective = (case_filter or CaseFilter()).model_copy()
        effective.visibility = visibility_filter(actor.role, effective.visibility)
        return self.repository.list_by_filter(effective)

    def list_events(self, case_id: str, actor: Actor) -> List[CaseEvent]:
        require(actor.role, CaseAction.VIEW_INTERNAL)
        self._load(case_id)
        return self.repository.list_events(case_id)

    # =========================================================================
    # Creation and editing
    # =========================================================================

    async def create_case(self, data: CreateCaseRequest, actor: Actor) -> DisciplinaryCase:
        require(actor.role, CaseAction.CREATE)
        if not actor.id:
            raise CaseValidationError("An acting user id is required to open a case")
        self._require_text_fields(data, REQUIRED_CREATE_FIELDS)

        case_number = self.number_generator.generate()

        supplied = {data.photo_url, *data.image_urls, *data.evidence_urls}
        photo_url, image_urls, evidence_urls = None, [], []
        try:
            photo_url = await self._ingest_single(
                data.photo_url, self.photo_policy, f"leader_photo_{case_number}", "leader photo"
            )
            image_urls = await self._ingest(
                data.image_urls, self.image_policy, f"disciplinary_case_{case_number}", "case images"
            )
            evidence_urls = await self._ingest(
                data.evidence_urls, self.document_policy, f"disciplinary_case_doc_{case_number}", "case documents"
            )
        except Exception:
            self._log_orphans([u for u in [photo_url] + image_urls if u and u not in supplied])
            raise

        uploaded = [u for u in [photo_url] + image_urls + evidence_urls if u and u not in supplied]
        attempts = self.settings.case_number_max_attempts
        for attempt in range(1, attempts + 1):
            now = self.clock()
            case = DisciplinaryCase(
                case_number=case_number,
                subject_name=data.subject_name.strip(),
                position=data.position.strip(),
                photo_url=photo_url,
                constituency=data.constituency,
                district=data.district,
                category=data.category,
                description=data.description.strip(),
                source=data.source,
                initiation_date=now,
                initiated_by=actor.id,
                evidence_urls=evidence_urls,
                image_urls=image_urls,
                source_links=list(data.source_links or []),
            )
            try:
                created = self.repository.insert(
                    case,
                    EventDraft(CaseEventType.CASE_CREATED, actor.id, {"case_number": case_number}),
                )
            except DuplicateCaseNumberError:
                self.logger.warning(
                    f"Case number {case_number} already taken (attempt {attempt}/{attempts})"
                )
                case_number = self.number_generator.generate()
                continue
            except Exception:
                self._log_orphans(uploaded)
                raise

            self.logger.info(f"Created disciplinary case {created.case_number} ({created.id}) by {actor.id}")
            return created

        self._log_orphans(uploaded)
        raise CaseValidationError(
            f"Could not allocate a unique case number after {attempts} attempts"
        )

    async def update_case(self, case_id: str, data: UpdateCaseRequest, actor: Actor) -> DisciplinaryCase:
        require(actor.role, CaseAction.UPDATE)
        existing = self._load(case_id)

        supplied = data.model_dump(exclude_unset=True)
        fields: Dict[str, object] = {}

        for name in EDITABLE_TEXT_FIELDS:
            if name in supplied:
                value = supplied[name]
                if name in REQUIRED_CREATE_FIELDS and (value is None or not str(value).strip()):
                    raise CaseValidationError(f"{name} cannot be empty")
                fields[name] = value.strip() if isinstance(value, str) else value
        for name in ("category", "source"):
            if supplied.get(name) is not None:
                fields[name] = supplied[name]
        if "source_links" in supplied:
            fields["source_links"] = list(supplied["source_links"] or [])

        prefix = existing.case_number
        if "photo_url" in supplied:
            fields["photo_url"] = await self._ingest_single(
                supplied["photo_url"], self.photo_policy, f"leader_photo_{prefix}", "leader photo"
            )
        if "image_urls" in supplied:
            fields["image_urls"] = await self._ingest(
                supplied["image_urls"], self.image_policy, f"disciplinary_case_{prefix}", "case images"
            )
        if "evidence_urls" in supplied:
            fields["evidence_urls"] = await self._ingest(
                supplied["evidence_urls"], self.document_policy, f"disciplinary_case_doc_{prefix}", "case documents"
            )

        if not fields:
            return existing

        event = EventDraft(CaseEventType.CASE_UPDATED, actor.id, {"fields": sorted(fields)})
        return self._write(case_id, fields, event)

    # =========================================================================
    # Workflow
    # =========================================================================

    def transition_status(
        self,
        case_id: str,
        new_status: CaseStatus,
        actor: Actor,
        notes: Optional[str] = None,
        review_authority: Optional[str] = None,
        review_start_date: Optional[datetime] = None,
    ) -> DisciplinaryCase:
        require(actor.role, CaseAction.TRANSITION_STATUS)
        existing = self._load(case_id)
        previous = existing.status

        # Any status may follow any other unless a guard is plugged in.
        if self.transition_guard is not None:
            self.transition_guard(previous, new_status)

        fields: Dict[str, object] = {"status": new_status}
        if review_authority is not None:
            fields["review_authority"] = review_authority
        if review_start_date is not None:
            fields["review_start_date"] = review_start_date

        events = [EventDraft(
            CaseEventType.STATUS_CHANGED,
            actor.id,
            {"from": previous.value, "to": new_status.value},
        )]
        note = notes.strip() if notes and notes.strip() else None
        if note:
            events.append(EventDraft(CaseEventType.NOTE_ADDED, actor.id, {"length": len(note)}))

        # Status, review metadata and note land in one commit.
        updated = self.repository.transition(case_id, fields, note, self.clock(), events)
        if updated is None:
            raise CaseNotFoundError(case_id)

        self.logger.info(f"Case {updated.case_number}: {previous.value} -> {new_status.value}")
        return updated

    def record_decision(
        self,
        case_id: str,
        outcome: ActionOutcome,
        actor: Actor,
        rationale: Optional[str] = None,
        effective_from: Optional[datetime] = None,
        effective_to: Optional[datetime] = None,
    ) -> DisciplinaryCase:
        require(actor.role, CaseAction.RECORD_DECISION)
        existing = self._load(case_id)

        if effective_from and effective_to and effective_to < effective_from:
            raise CaseValidationError("effective_to cannot be earlier than effective_from")

        fields: Dict[str, object] = {
            "action_outcome": outcome,
            "decision_authority": actor.id,
            "decision_date": self.clock(),
            # Forced even when the case was closed or archived.
            "status": CaseStatus.ACTION_TAKEN,
        }
        if rationale is not None:
            fields["decision_rationale"] = rationale
        if effective_from is not None:
            fields["effective_from"] = effective_from
        if effective_to is not None:
            fields["effective_to"] = effective_to

        event = EventDraft(
            CaseEventType.DECISION_RECORDED,
            actor.id,
            {"outcome": outcome.value, "previous_status": existing.status.value},
        )
        updated = self._write(case_id, fields, event)
        self.logger.info(f"Decision {outcome.value} recorded on case {updated.case_number} by {actor.id}")
        return updated

    def change_visibility(self, case_id: str, visibility: CaseVisibility, actor: Actor) -> DisciplinaryCase:
        require(actor.role, CaseAction.CHANGE_VISIBILITY)
        existing = self._load(case_id)

        event = EventDraft(
            CaseEventType.VISIBILITY_CHANGED,
            actor.id,
            {"from": existing.visibility.value, "to": visibility.value},
        )
        return self._write(case_id, {"visibility": visibility}, event)

    def append_note(self, case_id: str, text: str, actor: Actor) -> DisciplinaryCase:
        require(actor.role, CaseAction.APPEND_NOTE)
        self._load(case_id)
        if not text or not text.strip():
            raise CaseValidationError("Note text cannot be empty")
        return self._append_note(case_id, text.strip(), actor)

    async def append_images(self, case_id: str, raw_images: List[str], actor: Actor) -> DisciplinaryCase:
        require(actor.role, CaseAction.APPEND_IMAGES)
        existing = self._load(case_id)

        try:
            uploaded = await self.ingestor.upload_new(
                raw_images, self.image_policy, f"disciplinary_case_{existing.case_number}_add"
            )
        except Exception as e:
            self.logger.error(f"Failed to add images to case {existing.case_number}: {e}")
            raise

        if not uploaded:
            return existing

        event = EventDraft(CaseEventType.IMAGES_ADDED, actor.id, {"count": len(uploaded)})
        try:
            updated = self.repository.append_images(case_id, uploaded, event)
        except Exception:
            self._log_orphans(uploaded)
            raise
        if updated is None:
            self._log_orphans(uploaded)
            raise CaseNotFoundError(case_id)
        return updated

    # =========================================================================
    # Response shaping
    # =========================================================================

    def to_response(self, case: DisciplinaryCase, actor: Actor) -> CaseResponse:
        return build_case_response(case, include_internal=can_view_internal_notes(actor.role))

    # =========================================================================
    # Helpers
    # =========================================================================

    def _load(self, case_id: str) -> DisciplinaryCase:
        case = self.repository.get_by_id(case_id)
        if case is None:
            raise CaseNotFoundError(case_id)
        return case

    def _write(self, case_id: str, fields: Dict[str, object], event: EventDraft) -> DisciplinaryCase:
        updated = self.repository.update(case_id, fields, event)
        if updated is None:
            raise CaseNotFoundError(case_id)
        return updated

    def _append_note(self, case_id: str, text: str, actor: Actor) -> DisciplinaryCase:
        event = EventDraft(CaseEventType.NOTE_ADDED, actor.id, {"length": len(text)})
        updated = self.repository.append_note(case_id, text, self.clock(), event)
        if updated is None:
            raise CaseNotFoundError(case_id)
        return updated

    def _require_text_fields(self, data, names) -> None:
        missing = [name for name in names if not (getattr(data, name, None) or "").strip()]
        if missing:
            raise CaseValidationError(f"Missing required field(s): {', '.join(missing)}")
        for name in ("category", "source"):
            if getattr(data, name, None) is None:
                raise CaseValidationError(f"Missing required field(s): {name}")

    async def _ingest(
        self, raw_items: Optional[List[str]], policy: IngestPolicy, name_prefix: str, label: str
    ) -> List[str]:
        try:
            return await self.ingestor.ingest(raw_items, policy, name_prefix)
        except Exception as e:
            self.logger.error(f"Failed to upload {label}: {e}")
            raise

    async def _ingest_single(
        self, raw: Optional[str], policy: IngestPolicy, name_prefix: str, label: str
    ) -> Optional[str]:
        if raw is None or not raw.strip():
            return None
        try:
            return await self.ingestor.ingest_single(raw, policy, name_prefix)
        except Exception as e:
            self.logger.error(f"Failed to upload {label}: {e}")
            raise

    def _log_orphans(self, urls: List[str]) -> None:
        fresh = [u for u in urls if u]
        if fresh:
            self.logger.warning(f"Case write failed; uploaded blobs not attached to any case: {fresh}")


def build_case_response(case: DisciplinaryCase, include_internal: bool) -> CaseResponse:
    return CaseResponse(
        id=case.id,
        case_number=case.case_number,
        subject_name=case.subject_name,
        position=case.position,
        photo_url=case.photo_url,
        constituency=case.constituency,
        district=case.district,
        category=case.category,
        description=case.description,
        source=case.source,
        initiation_date=case.initiation_date,
        review_start_date=case.review_start_date,
        decision_date=case.decision_date,
        effective_from=case.effective_from,
        effective_to=case.effective_to,
        initiated_by=case.initiated_by,
        review_authority=case.review_authority,
        decision_authority=case.decision_authority,
        status=case.status,
        action_outcome=case.action_outcome,
        visibility=case.visibility,
        evidence_urls=list(case.evidence_urls or []),
        image_urls=list(case.image_urls or []),
        source_links=list(case.source_links or []),
        internal_notes=case.internal_notes if include_internal else None,
        decision_rationale=case.decision_rationale,
        created_at=case.created_at,
        updated_at=case.updated_at,
    )
