"""
Case Lifecycle Service Tests
============================

Tests for:
1. Case creation (defaults, evidence handling, permission and validation failures)
2. Reads and listing under the visibility rules
3. Status, decision and visibility changes
4. Note and image appends
5. Response shaping
"""

import base64
import logging
import os
import re
from datetime import datetime, timedelta

import pytest

from discipline_lite.config import Settings
from discipline_lite.db.models import (
    ActionOutcome, CaseEventType, CaseStatus, CaseVisibility, IssueCategory, IssueSource,
)
from discipline_lite.errors import (
    CaseForbiddenError, CaseNotFoundError, CaseValidationError, ConcurrentModificationError,
    PayloadTooLargeError, UploadFailure,
)
from discipline_lite.evidence import EvidenceIngestor
from discipline_lite.policy import Actor, ActorRole
from discipline_lite.repository import CaseRepository, NOTE_SEPARATOR
from discipline_lite.schemas import CaseFilter, CreateCaseRequest, UpdateCaseRequest
from discipline_lite.service import CaseLifecycleService

ADMIN = Actor(id="admin-1", role=ActorRole.ADMIN)
SUPER = Actor(id="super-1", role=ActorRole.SUPER_ADMIN)
MEMBER = Actor(id="member-1", role=ActorRole.MEMBER)
ANON = Actor.anonymous()

CASE_NUMBER_RE = re.compile(r"^[A-Z]+-\d{6}-\d{4}$")


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class FixedNumbers:
    """Hands out case numbers from a list."""

    def __init__(self, *numbers):
        self.numbers = list(numbers)
        self.calls = 0

    def generate(self) -> str:
        self.calls += 1
        return self.numbers.pop(0)


@pytest.fixture
def sqlalchemy_db(tmp_path):
    from discipline_lite.db.session import reset_engine, init_db

    old_db_url = os.environ.get("DATABASE_URL")
    db_path = tmp_path / "service.db"
    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"
    reset_engine()
    init_db()

    yield

    if old_db_url is not None:
        os.environ["DATABASE_URL"] = old_db_url
    else:
        os.environ.pop("DATABASE_URL", None)
    reset_engine()


@pytest.fixture
def db(sqlalchemy_db):
    from discipline_lite.db.session import SessionLocal

    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def settings():
    return Settings(max_image_size_kb=500, max_document_size_kb=5120, case_number_max_attempts=3)


@pytest.fixture
def build_service(db, settings, blob_store):
    def factory(store=None, number_generator=None, transition_guard=None):
        return CaseLifecycleService(
            repository=CaseRepository(db),
            ingestor=EvidenceIngestor(store or blob_store, upload_timeout=5.0),
            number_generator=number_generator,
            logger=logging.getLogger("test.service"),
            settings=settings,
            transition_guard=transition_guard,
        )

    return factory


@pytest.fixture
def service(build_service):
    return build_service()


def _request(**overrides):
    data = {
        "subject_name": "Ravi Kumar",
        "position": "District Secretary",
        "district": "North",
        "category": IssueCategory.MISCONDUCT,
        "description": "Public altercation at a rally",
        "source": IssueSource.MEDIA_REPORT,
    }
    data.update(overrides)
    return CreateCaseRequest(**data)


async def _public_case(service, **overrides):
    case = await service.create_case(_request(**overrides), ADMIN)
    return service.change_visibility(case.id, CaseVisibility.PUBLIC, SUPER)


# =============================================================================
# Creation
# =============================================================================

class TestCreateCase:

    @pytest.mark.asyncio
    async def test_defaults(self, service):
        case = await service.create_case(_request(), ADMIN)

        assert CASE_NUMBER_RE.match(case.case_number)
        assert case.status == CaseStatus.UNDER_REVIEW
        assert case.visibility == CaseVisibility.INTERNAL_ONLY
        assert case.initiated_by == "admin-1"
        assert case.action_outcome is None
        assert case.internal_notes is None
        events = service.list_events(case.id, ADMIN)
        assert [e.event_type for e in events] == [CaseEventType.CASE_CREATED]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("actor", [MEMBER, ANON])
    async def test_non_admin_forbidden_before_any_work(self, service, blob_store, actor):
        with pytest.raises(CaseForbiddenError):
            await service.create_case(_request(image_urls=[b64(b"img")]), actor)

        assert blob_store.uploads == []
        assert service.list_cases(None, ADMIN) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["subject_name", "position", "description"])
    async def test_blank_required_field_rejected(self, service, field):
        with pytest.raises(CaseValidationError):
            await service.create_case(_request(**{field: "   "}), ADMIN)

    @pytest.mark.asyncio
    async def test_evidence_references_kept_and_payloads_uploaded(self, service, blob_store):
        case = await service.create_case(
            _request(
                photo_url=b64(b"portrait"),
                image_urls=[b64(b"img-a"), "https://cdn.example.com/existing.jpg"],
                evidence_urls=["https://docs.example.com/complaint.pdf", b64(b"%PDF")],
                source_links=["https://news.example.com/story"],
            ),
            ADMIN,
        )

        assert case.photo_url.startswith("https://cdn.test/disciplinary-cases/leader-photos/leader_photo_")
        assert case.image_urls[0] == "https://cdn.example.com/existing.jpg"
        assert f"disciplinary_case_{case.case_number}_" in case.image_urls[1]
        assert case.evidence_urls[0] == "https://docs.example.com/complaint.pdf"
        assert f"disciplinary-cases-docs/disciplinary_case_doc_{case.case_number}_" in case.evidence_urls[1]
        assert case.source_links == ["https://news.example.com/story"]
        assert len(blob_store.uploads) == 3

    @pytest.mark.asyncio
    async def test_oversize_image_rejected_without_case(self, service, blob_store):
        oversize = b64(b"x" * (501 * 1024))

        with pytest.raises(CaseValidationError):
            await service.create_case(_request(image_urls=[oversize]), ADMIN)

        assert service.list_cases(None, ADMIN) == []

    @pytest.mark.asyncio
    async def test_upload_failure_leaves_no_case(self, build_service, make_blob_store):
        service = build_service(store=make_blob_store(fail_names={"disciplinary_case_doc_"}))

        with pytest.raises(UploadFailure):
            await service.create_case(_request(evidence_urls=[b64(b"doc")]), ADMIN)

        assert service.list_cases(None, ADMIN) == []

    @pytest.mark.asyncio
    async def test_case_number_collision_retried(self, build_service):
        first = await build_service(number_generator=FixedNumbers("DC-202601-1111")).create_case(_request(), ADMIN)

        numbers = FixedNumbers("DC-202601-1111", "DC-202601-2222")
        second = await build_service(number_generator=numbers).create_case(_request(subject_name="Other"), ADMIN)

        assert first.case_number == "DC-202601-1111"
        assert second.case_number == "DC-202601-2222"
        assert numbers.calls == 2

    @pytest.mark.asyncio
    async def test_case_number_collision_gives_up(self, build_service):
        await build_service(number_generator=FixedNumbers("DC-202601-1111")).create_case(_request(), ADMIN)

        numbers = FixedNumbers(*(["DC-202601-1111"] * 4))
        with pytest.raises(CaseValidationError):
            await build_service(number_generator=numbers).create_case(_request(), ADMIN)


# =============================================================================
# Reads
# =============================================================================

class TestReads:

    @pytest.mark.asyncio
    async def test_hidden_case_is_forbidden_not_missing(self, service):
        case = await service.create_case(_request(), ADMIN)

        with pytest.raises(CaseForbiddenError):
            service.get_case(case.id, MEMBER)
        with pytest.raises(CaseForbiddenError):
            service.get_case(case.id, ANON)

    def test_missing_case(self, service):
        with pytest.raises(CaseNotFoundError) as exc_info:
            service.get_case("no-such-id", ADMIN)
        assert exc_info.value.message == "Disciplinary case with ID no-such-id not found"

    @pytest.mark.asyncio
    async def test_public_case_readable_by_anyone(self, service):
        case = await _public_case(service)

        assert service.get_case(case.id, ANON).id == case.id
        assert service.get_case(case.id, MEMBER).id == case.id

    @pytest.mark.asyncio
    async def test_non_privileged_listing_forced_to_public(self, service):
        hidden = await service.create_case(_request(subject_name="Hidden"), ADMIN)
        public = await _public_case(service, subject_name="Visible")

        listed = service.list_cases(CaseFilter(visibility=CaseVisibility.INTERNAL_ONLY), MEMBER)

        assert [c.id for c in listed] == [public.id]
        assert hidden.id not in [c.id for c in service.list_cases(None, ANON)]

    @pytest.mark.asyncio
    async def test_admin_listing_filters(self, service):
        first = await service.create_case(_request(subject_name="First"), ADMIN)
        await service.create_case(_request(subject_name="Second", category=IssueCategory.OTHER), ADMIN)
        service.transition_status(first.id, CaseStatus.CLOSED, ADMIN)

        assert len(service.list_cases(None, ADMIN)) == 2
        closed = service.list_cases(CaseFilter(status=CaseStatus.CLOSED), ADMIN)
        assert [c.subject_name for c in closed] == ["First"]
        other = service.list_cases(CaseFilter(category=IssueCategory.OTHER), ADMIN)
        assert [c.subject_name for c in other] == ["Second"]
        assert [c.subject_name for c in service.list_cases(CaseFilter(search="seco"), ADMIN)] == ["Second"]

    @pytest.mark.asyncio
    async def test_events_are_admin_only(self, service):
        case = await _public_case(service)

        with pytest.raises(CaseForbiddenError):
            service.list_events(case.id, MEMBER)

        events = service.list_events(case.id, ADMIN)
        assert [e.event_type for e in events] == [
            CaseEventType.CASE_CREATED,
            CaseEventType.VISIBILITY_CHANGED,
        ]


# =============================================================================
# Editing and workflow
# =============================================================================

class TestWorkflow:

    @pytest.mark.asyncio
    async def test_update_never_touches_identity_fields(self, service):
        case = await service.create_case(_request(), ADMIN)
        number, initiated_by, initiated_at = case.case_number, case.initiated_by, case.initiation_date

        updated = await service.update_case(
            case.id,
            UpdateCaseRequest(position="Former Secretary", district="South", image_urls=["https://x/new.jpg"]),
            SUPER,
        )

        assert updated.position == "Former Secretary"
        assert updated.district == "South"
        assert updated.image_urls == ["https://x/new.jpg"]
        assert updated.subject_name == "Ravi Kumar"
        assert (updated.case_number, updated.initiated_by, updated.initiation_date) == (
            number, initiated_by, initiated_at,
        )

    @pytest.mark.asyncio
    async def test_update_rejects_blanking_required_field(self, service):
        case = await service.create_case(_request(), ADMIN)

        with pytest.raises(CaseValidationError):
            await service.update_case(case.id, UpdateCaseRequest(subject_name=""), ADMIN)

    @pytest.mark.asyncio
    async def test_update_forbidden_for_member(self, service):
        case = await service.create_case(_request(), ADMIN)

        with pytest.raises(CaseForbiddenError):
            await service.update_case(case.id, UpdateCaseRequest(position="x"), MEMBER)

    @pytest.mark.asyncio
    async def test_any_status_may_follow_any_other(self, service):
        case = await service.create_case(_request(), ADMIN)

        for status in [CaseStatus.ARCHIVED, CaseStatus.UNDER_REVIEW, CaseStatus.CLOSED, CaseStatus.CLARIFICATION_REQUIRED]:
            case = service.transition_status(case.id, status, ADMIN)
            assert case.status == status

    @pytest.mark.asyncio
    async def test_transition_sets_review_fields_and_appends_notes(self, service):
        case = await service.create_case(_request(), ADMIN)
        service.append_note(case.id, "intake note", ADMIN)
        start = datetime(2026, 2, 1, 10, 0)

        updated = service.transition_status(
            case.id,
            CaseStatus.CLARIFICATION_REQUIRED,
            ADMIN,
            notes="asked for statement",
            review_authority="committee-7",
            review_start_date=start,
        )

        assert updated.status == CaseStatus.CLARIFICATION_REQUIRED
        assert updated.review_authority == "committee-7"
        assert updated.review_start_date == start
        assert updated.internal_notes.startswith("intake note" + NOTE_SEPARATOR)
        assert updated.internal_notes.endswith("\nasked for statement")

    @pytest.mark.asyncio
    async def test_transition_guard_can_reject(self, build_service):
        def no_reopen(current, target):
            if current == CaseStatus.CLOSED:
                raise CaseValidationError(f"Cannot move a closed case to {target.value}")

        service = build_service(transition_guard=no_reopen)
        case = await service.create_case(_request(), ADMIN)
        service.transition_status(case.id, CaseStatus.CLOSED, ADMIN)

        with pytest.raises(CaseValidationError):
            service.transition_status(case.id, CaseStatus.UNDER_REVIEW, ADMIN)
        assert service.get_case(case.id, ADMIN).status == CaseStatus.CLOSED

    @pytest.mark.asyncio
    async def test_transition_forbidden_for_member(self, service):
        case = await service.create_case(_request(), ADMIN)

        with pytest.raises(CaseForbiddenError):
            service.transition_status(case.id, CaseStatus.CLOSED, MEMBER)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("prior", [CaseStatus.CLOSED, CaseStatus.ARCHIVED, CaseStatus.UNDER_REVIEW])
    async def test_decision_forces_action_taken(self, service, prior):
        case = await service.create_case(_request(), ADMIN)
        service.transition_status(case.id, prior, ADMIN)

        decided = service.record_decision(
            case.id,
            ActionOutcome.TEMPORARY_SUSPENSION,
            ADMIN,
            rationale="Repeated conduct",
            effective_from=datetime(2026, 3, 1),
            effective_to=datetime(2026, 9, 1),
        )

        assert decided.status == CaseStatus.ACTION_TAKEN
        assert decided.action_outcome == ActionOutcome.TEMPORARY_SUSPENSION
        assert decided.decision_rationale == "Repeated conduct"
        assert decided.decision_authority == "admin-1"
        assert decided.decision_date is not None
        assert decided.effective_to == datetime(2026, 9, 1)

    @pytest.mark.asyncio
    async def test_decision_rejects_inverted_effective_window(self, service):
        case = await service.create_case(_request(), ADMIN)

        with pytest.raises(CaseValidationError):
            service.record_decision(
                case.id,
                ActionOutcome.WARNING,
                ADMIN,
                effective_from=datetime(2026, 3, 1),
                effective_to=datetime(2026, 3, 1) - timedelta(days=1),
            )
        assert service.get_case(case.id, ADMIN).status == CaseStatus.UNDER_REVIEW

    @pytest.mark.asyncio
    async def test_visibility_requires_super_admin(self, service):
        case = await service.create_case(_request(), ADMIN)

        with pytest.raises(CaseForbiddenError) as exc_info:
            service.change_visibility(case.id, CaseVisibility.PUBLIC, ADMIN)
        assert exc_info.value.message == "Only Super Admins can change case visibility"

        updated = service.change_visibility(case.id, CaseVisibility.RESTRICTED, SUPER)
        assert updated.visibility == CaseVisibility.RESTRICTED

    def test_mutations_on_missing_case(self, service):
        with pytest.raises(CaseNotFoundError):
            service.transition_status("missing", CaseStatus.CLOSED, ADMIN)
        with pytest.raises(CaseNotFoundError):
            service.record_decision("missing", ActionOutcome.WARNING, ADMIN)
        with pytest.raises(CaseNotFoundError):
            service.append_note("missing", "text", ADMIN)

    @pytest.mark.asyncio
    async def test_failed_note_append_rolls_back_status_change(self, service, monkeypatch):
        case = await service.create_case(_request(), ADMIN)

        def lose_the_race(existing, note, stamp):
            raise ConcurrentModificationError(f"Case {case.id} was modified concurrently")

        monkeypatch.setattr("discipline_lite.repository.join_notes", lose_the_race)

        with pytest.raises(ConcurrentModificationError):
            service.transition_status(case.id, CaseStatus.CLOSED, ADMIN, notes="why", review_authority="panel-2")

        stored = service.get_case(case.id, ADMIN)
        assert stored.status == CaseStatus.UNDER_REVIEW
        assert stored.review_authority is None
        assert stored.internal_notes is None
        assert [e.event_type for e in service.list_events(case.id, ADMIN)] == [CaseEventType.CASE_CREATED]

    @pytest.mark.asyncio
    async def test_transition_with_note_is_a_single_write(self, service):
        case = await service.create_case(_request(), ADMIN)
        version_before = service.get_case(case.id, ADMIN).version

        updated = service.transition_status(case.id, CaseStatus.REVIEW_COMPLETED, ADMIN, notes="panel agreed")

        assert updated.version == version_before + 1
        assert updated.internal_notes == "panel agreed"
        types = [e.event_type for e in service.list_events(case.id, ADMIN)]
        assert sorted(types[1:]) == sorted([CaseEventType.STATUS_CHANGED, CaseEventType.NOTE_ADDED])

    @pytest.mark.asyncio
    async def test_second_decision_without_rationale_keeps_the_first(self, service):
        case = await service.create_case(_request(), ADMIN)
        service.record_decision(case.id, ActionOutcome.WARNING, ADMIN, rationale="First offence")

        updated = service.record_decision(case.id, ActionOutcome.TEMPORARY_SUSPENSION, SUPER)

        assert updated.action_outcome == ActionOutcome.TEMPORARY_SUSPENSION
        assert updated.decision_rationale == "First offence"
        assert updated.decision_authority == "super-1"

    @pytest.mark.asyncio
    async def test_identity_fields_survive_every_mutation(self, service):
        case = await service.create_case(_request(image_urls=["https://x/original.jpg"]), ADMIN)
        identity = (case.case_number, case.initiated_by, case.initiation_date)

        def snapshot(row):
            return (row.case_number, row.initiated_by, row.initiation_date)

        mutations = [
            lambda: service.transition_status(case.id, CaseStatus.CLARIFICATION_REQUIRED, SUPER, notes="asked"),
            lambda: service.record_decision(case.id, ActionOutcome.WARNING, SUPER, rationale="minor"),
            lambda: service.change_visibility(case.id, CaseVisibility.PUBLIC, SUPER),
            lambda: service.append_note(case.id, "follow-up", SUPER),
        ]
        for mutate in mutations:
            assert snapshot(mutate()) == identity
            assert snapshot(service.get_case(case.id, ADMIN)) == identity

        updated = await service.append_images(case.id, [b64(b"extra")], SUPER)
        assert snapshot(updated) == identity
        assert snapshot(service.get_case(case.id, ADMIN)) == identity

    @pytest.mark.asyncio
    async def test_admin_without_user_id_cannot_open_case(self, service, blob_store):
        with pytest.raises(CaseValidationError):
            await service.create_case(_request(image_urls=[b64(b"img")]), Actor(id=None, role=ActorRole.ADMIN))

        assert blob_store.uploads == []
        assert service.list_cases(None, ADMIN) == []


# =============================================================================
# Appends
# =============================================================================

class TestAppends:

    @pytest.mark.asyncio
    async def test_notes_accumulate_in_order(self, service):
        case = await service.create_case(_request(), ADMIN)

        service.append_note(case.id, "first", ADMIN)
        service.append_note(case.id, "second", ADMIN)
        updated = service.append_note(case.id, "third", ADMIN)

        parts = updated.internal_notes.split(NOTE_SEPARATOR)
        assert parts[0] == "first"
        assert parts[1].endswith("\nsecond")
        assert parts[2].endswith("\nthird")
        assert re.match(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z\n", parts[1])

    @pytest.mark.asyncio
    async def test_blank_note_rejected(self, service):
        case = await service.create_case(_request(), ADMIN)

        with pytest.raises(CaseValidationError):
            service.append_note(case.id, "   ", ADMIN)

    @pytest.mark.asyncio
    async def test_append_images_drops_references(self, service, blob_store):
        case = await service.create_case(_request(image_urls=["https://x/original.jpg"]), ADMIN)

        updated = await service.append_images(
            case.id, ["https://x/ignored.jpg", b64(b"new-1"), b64(b"new-2")], ADMIN
        )

        assert updated.image_urls[0] == "https://x/original.jpg"
        assert len(updated.image_urls) == 3
        assert "https://x/ignored.jpg" not in updated.image_urls
        assert all(f"disciplinary_case_{case.case_number}_add_" in url for url in updated.image_urls[1:])

    @pytest.mark.asyncio
    async def test_append_only_references_is_a_no_op(self, service):
        case = await service.create_case(_request(image_urls=["https://x/original.jpg"]), ADMIN)

        updated = await service.append_images(case.id, ["https://x/other.jpg"], ADMIN)

        assert updated.image_urls == ["https://x/original.jpg"]
        events = service.list_events(case.id, ADMIN)
        assert CaseEventType.IMAGES_ADDED not in [e.event_type for e in events]

    @pytest.mark.asyncio
    async def test_append_oversize_leaves_case_unchanged(self, service, blob_store):
        case = await service.create_case(_request(), ADMIN)

        with pytest.raises(PayloadTooLargeError):
            await service.append_images(case.id, [b64(b"ok"), b64(b"x" * (501 * 1024))], ADMIN)

        assert service.get_case(case.id, ADMIN).image_urls == []
        assert blob_store.uploads == []

    @pytest.mark.asyncio
    async def test_append_images_forbidden_for_member(self, service, blob_store):
        case = await _public_case(service)

        with pytest.raises(CaseForbiddenError):
            await service.append_images(case.id, [b64(b"img")], MEMBER)
        assert blob_store.uploads == []


# =============================================================================
# Responses
# =============================================================================

class TestResponses:

    @pytest.mark.asyncio
    async def test_internal_notes_hidden_from_non_privileged(self, service):
        case = await _public_case(service)
        case = service.append_note(case.id, "sensitive", ADMIN)

        assert service.to_response(case, ADMIN).internal_notes == "sensitive"
        assert service.to_response(case, MEMBER).internal_notes is None
        assert service.to_response(case, ANON).internal_notes is None
        assert service.to_response(case, MEMBER).case_number == case.case_number
