"""
Case Repository
===============

All SQL for disciplinary cases lives here; the lifecycle service never builds
queries itself.

Every mutation goes through ``_mutate``: the row is re-read, changed, and
committed under the ORM version check. If another writer got there first the
commit raises StaleDataError, the session is rolled back and the change is
re-applied on top of the newer row. This is what keeps note and image appends
from losing each other's additions.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .db.models import DisciplinaryCase, CaseEvent, CaseEventType
from .errors import ConcurrentModificationError
from .schemas import CaseFilter

logger = logging.getLogger(__name__)

NOTE_SEPARATOR = "\n\n---\n"


class DuplicateCaseNumberError(Exception):
    """Raised when an insert collides with an existing case number."""


@dataclass
class EventDraft:
    """Audit event written in the same transaction as the change it describes"""
    event_type: CaseEventType
    actor_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def build(self, case_id: str) -> CaseEvent:
        return CaseEvent(
            case_id=case_id,
            event_type=self.event_type,
            actor_id=self.actor_id,
            details=self.details,
        )


def join_notes(existing: Optional[str], note: str, stamp: datetime) -> str:
    """Append ``note`` to the note log under a timestamped separator."""
    if not existing:
        return note
    return f"{existing}{NOTE_SEPARATOR}{stamp.isoformat(timespec='milliseconds')}Z\n{note}"


def _like_pattern(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class CaseRepository:
    """SQLAlchemy-backed storage for disciplinary cases"""

    def __init__(self, db: Session, max_attempts: int = 3):
        self.db = db
        self.max_attempts = max(1, max_attempts)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_by_id(self, case_id: str, fresh: bool = False) -> Optional[DisciplinaryCase]:
        query = self.db.query(DisciplinaryCase)
        if fresh:
            query = query.populate_existing()
        return query.filter(DisciplinaryCase.id == case_id).first()

    def list_by_filter(self, case_filter: Optional[CaseFilter] = None) -> List[DisciplinaryCase]:
        query = self.db.query(DisciplinaryCase)

        if case_filter is not None:
            if case_filter.status:
                query = query.filter(DisciplinaryCase.status == case_filter.status)
            if case_filter.category:
                query = query.filter(DisciplinaryCase.category == case_filter.category)
            if case_filter.visibility:
                query = query.filter(DisciplinaryCase.visibility == case_filter.visibility)
            term = (case_filter.search or "").strip()
            if term:
                pattern = _like_pattern(term)
                query = query.filter(or_(
                    DisciplinaryCase.case_number.ilike(pattern, escape="\\"),
                    DisciplinaryCase.subject_name.ilike(pattern, escape="\\"),
                ))

        return query.order_by(
            DisciplinaryCase.initiation_date.desc(),
            DisciplinaryCase.created_at.desc(),
        ).all()

    def list_events(self, case_id: str) -> List[CaseEvent]:
        return (
            self.db.query(CaseEvent)
            .filter(CaseEvent.case_id == case_id)
            .order_by(CaseEvent.occurred_at.asc())
            .all()
        )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def insert(self, case: DisciplinaryCase, event: Optional[EventDraft] = None) -> DisciplinaryCase:
        self.db.add(case)
        try:
            self.db.flush()
            if event is not None:
                self.db.add(event.build(case.id))
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if self.get_case_number_taken(case.case_number):
                raise DuplicateCaseNumberError(case.case_number) from e
            raise
        self.db.refresh(case)
        return case

    def get_case_number_taken(self, case_number: str) -> bool:
        return (
            self.db.query(DisciplinaryCase.id)
            .filter(DisciplinaryCase.case_number == case_number)
            .first()
            is not None
        )

    def update(
        self, case_id: str, fields: Dict[str, Any], event: Optional[EventDraft] = None
    ) -> Optional[DisciplinaryCase]:
        """Set ``fields`` on the case. Returns None if the case does not exist."""
        def apply(case: DisciplinaryCase) -> None:
            for name, value in fields.items():
                setattr(case, name, value)

        return self._mutate(case_id, apply, event)

    def append_note(
        self, case_id: str, note: str, stamp: datetime, event: Optional[EventDraft] = None
    ) -> Optional[DisciplinaryCase]:
        def apply(case: DisciplinaryCase) -> None:
            case.internal_notes = join_notes(case.internal_notes, note, stamp)

        return self._mutate(case_id, apply, event)

    def transition(
        self,
        case_id: str,
        fields: Dict[str, Any],
        note: Optional[str],
        stamp: datetime,
        events: Sequence[EventDraft] = (),
    ) -> Optional[DisciplinaryCase]:
        """Set ``fields`` and append ``note`` (if any) in a single commit."""
        def apply(case: DisciplinaryCase) -> None:
            for name, value in fields.items():
                setattr(case, name, value)
            if note:
                case.internal_notes = join_notes(case.internal_notes, note, stamp)

        return self._mutate(case_id, apply, *events)

    def append_images(
        self, case_id: str, image_urls: List[str], event: Optional[EventDraft] = None
    ) -> Optional[DisciplinaryCase]:
        def apply(case: DisciplinaryCase) -> None:
            # New list object so the JSON column is flagged dirty.
            case.image_urls = list(case.image_urls or []) + list(image_urls)

        return self._mutate(case_id, apply, event)

    def _mutate(
        self,
        case_id: str,
        apply: Callable[[DisciplinaryCase], None],
        *events: Optional[EventDraft],
    ) -> Optional[DisciplinaryCase]:
        for attempt in range(1, self.max_attempts + 1):
            case = self.get_by_id(case_id, fresh=True)
            if case is None:
                return None

            try:
                apply(case)
                for event in events:
                    if event is not None:
                        self.db.add(event.build(case.id))
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                logger.warning(
                    f"Concurrent write on case {case_id} (attempt {attempt}/{self.max_attempts}), retrying"
                )
                continue
            except Exception:
                self.db.rollback()
                raise

            self.db.refresh(case)
            return case

        raise ConcurrentModificationError(
            f"Case {case_id} was modified concurrently; gave up after {self.max_attempts} attempts"
        )
