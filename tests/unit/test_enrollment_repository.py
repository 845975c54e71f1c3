"""
SQL-level tests for the enrollment and auto-enrollment repositories with the
database helpers patched out.
"""

import uuid
from datetime import UTC, datetime

import pytest

from app.db.helpers import UNIQUE_VIOLATION, DatabaseError
from app.features.sequence_enrollment.domain import (
    AutoEnrollmentConfig,
    DuplicateEnrollment,
    Enrollment,
    EnrollmentConflict,
    EnrollmentFilters,
    EnrollmentNotFound,
    EnrollmentStatus,
    EnrollmentTrigger,
    LedgerDecision,
    PageRequest,
)
from app.features.sequence_enrollment.repository import (
    auto_enrollment_repository,
    enrollment_repository,
)
from app.features.sequence_enrollment.repository.auto_enrollment_repository import (
    AutoEnrollmentConfigRepository,
    AutoEnrollmentLedgerRepository,
)
from app.features.sequence_enrollment.repository.enrollment_repository import EnrollmentRepository

NOW = datetime(2026, 2, 1, 8, 0, tzinfo=UTC)


def _enrollment(**overrides) -> Enrollment:
    values = {
        "id": str(uuid.uuid4()),
        "sequence_id": "SEQ1",
        "job_application_id": "A1",
        "job_id": "job-1",
        "status": EnrollmentStatus.ACTIVE,
        "enrollment_trigger": EnrollmentTrigger.MANUAL,
        "enrolled_at": NOW,
        "updated_at": NOW,
        "next_execution_at": NOW,
    }
    values.update(overrides)
    return Enrollment(**values)


def _row(enrollment: Enrollment, **overrides) -> dict:
    row = {
        "id": uuid.UUID(enrollment.id),
        "sequence_id": enrollment.sequence_id,
        "job_application_id": enrollment.job_application_id,
        "job_id": enrollment.job_id,
        "status": enrollment.status.value,
        "enrollment_trigger": enrollment.enrollment_trigger.value,
        "current_step_id": enrollment.current_step_id,
        "current_step_order": enrollment.current_step_order,
        "total_steps_completed": enrollment.total_steps_completed,
        "next_execution_at": enrollment.next_execution_at,
        "last_executed_at": None,
        "completed_at": None,
        "paused_at": None,
        "removed_at": None,
        "enrolled_at": enrollment.enrolled_at,
        "updated_at": enrollment.updated_at,
        "metadata": None,
        "execution_log": None,
        "version": 1,
    }
    row.update(overrides)
    return row


class Recorder:
    """Stand-in for fetch_one/fetch_val/fetch_all that replays queued results."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls: list[tuple[str, tuple]] = []

    async def __call__(self, query, params=(), **kwargs):
        self.calls.append((query, params))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


@pytest.mark.asyncio
async def test_insert_returns_stored_enrollment(monkeypatch):
    enrollment = _enrollment()
    fetch_one = Recorder(_row(enrollment))
    monkeypatch.setattr(enrollment_repository, "fetch_one", fetch_one)

    stored = await EnrollmentRepository.insert(enrollment)

    assert stored.id == enrollment.id
    assert stored.metadata == {}
    assert stored.execution_log == []
    assert "ON CONFLICT (sequence_id, job_application_id)" in fetch_one.calls[0][0]


@pytest.mark.asyncio
async def test_insert_conflict_reports_existing_enrollment(monkeypatch):
    existing = _enrollment()
    fetch_one = Recorder(None, _row(existing))
    monkeypatch.setattr(enrollment_repository, "fetch_one", fetch_one)

    with pytest.raises(DuplicateEnrollment) as exc:
        await EnrollmentRepository.insert(_enrollment())

    assert exc.value.existing_id == existing.id


@pytest.mark.asyncio
async def test_insert_unique_violation_is_a_duplicate(monkeypatch):
    violation = DatabaseError("duplicate key", recoverable=False, sqlstate=UNIQUE_VIOLATION)
    fetch_one = Recorder(violation, None)
    monkeypatch.setattr(enrollment_repository, "fetch_one", fetch_one)

    with pytest.raises(DuplicateEnrollment) as exc:
        await EnrollmentRepository.insert(_enrollment())

    assert exc.value.existing_id is None


@pytest.mark.asyncio
async def test_insert_other_database_errors_propagate(monkeypatch):
    fetch_one = Recorder(DatabaseError("check violation", recoverable=False, sqlstate="23514"))
    monkeypatch.setattr(enrollment_repository, "fetch_one", fetch_one)

    with pytest.raises(DatabaseError):
        await EnrollmentRepository.insert(_enrollment())


@pytest.mark.asyncio
async def test_get_with_malformed_id_skips_query(monkeypatch):
    fetch_one = Recorder()
    monkeypatch.setattr(enrollment_repository, "fetch_one", fetch_one)

    assert await EnrollmentRepository.get("not-a-uuid") is None
    assert fetch_one.calls == []


@pytest.mark.asyncio
async def test_save_bumps_version(monkeypatch):
    enrollment = _enrollment(status=EnrollmentStatus.PAUSED, next_execution_at=None)
    fetch_one = Recorder(_row(enrollment, version=3))
    monkeypatch.setattr(enrollment_repository, "fetch_one", fetch_one)

    saved = await EnrollmentRepository.save(enrollment, expected_version=2)

    query, params = fetch_one.calls[0]
    assert "version = version + 1" in query
    assert params[-2:] == (enrollment.id, 2)
    assert saved.version == 3
    assert saved.status == EnrollmentStatus.PAUSED


@pytest.mark.asyncio
async def test_save_stale_version_conflicts(monkeypatch):
    monkeypatch.setattr(enrollment_repository, "fetch_one", Recorder(None))
    monkeypatch.setattr(enrollment_repository, "fetch_val", Recorder(5))

    with pytest.raises(EnrollmentConflict):
        await EnrollmentRepository.save(_enrollment(), expected_version=4)


@pytest.mark.asyncio
async def test_save_missing_row_not_found(monkeypatch):
    monkeypatch.setattr(enrollment_repository, "fetch_one", Recorder(None))
    monkeypatch.setattr(enrollment_repository, "fetch_val", Recorder(None))

    with pytest.raises(EnrollmentNotFound):
        await EnrollmentRepository.save(_enrollment(), expected_version=1)


def test_filter_clause_hides_removed_by_default():
    where, params = EnrollmentRepository._filter_clause(
        EnrollmentFilters(sequence_id="SEQ1", status=EnrollmentStatus.ACTIVE)
    )

    assert where == "WHERE sequence_id = %s AND status = %s AND removed_at IS NULL"
    assert params == ["SEQ1", "active"]


def test_filter_clause_with_removed_and_no_filters():
    assert EnrollmentRepository._filter_clause(EnrollmentFilters(include_removed=True)) == ("", [])


@pytest.mark.asyncio
async def test_list_page_orders_and_offsets(monkeypatch):
    enrollment = _enrollment()
    fetch_val = Recorder(7)
    fetch_all = Recorder([_row(enrollment)])
    monkeypatch.setattr(enrollment_repository, "fetch_val", fetch_val)
    monkeypatch.setattr(enrollment_repository, "fetch_all", fetch_all)

    items, total = await EnrollmentRepository.list_page(
        EnrollmentFilters(job_id="job-1"),
        PageRequest(page=3, limit=2, sort_by="nextExecutionAt", sort_order="asc"),
    )

    query, params = fetch_all.calls[0]
    assert "ORDER BY next_execution_at ASC NULLS LAST, id ASC" in query
    assert params == ("job-1", 2, 4)
    assert total == 7
    assert [e.id for e in items] == [enrollment.id]


@pytest.mark.asyncio
async def test_count_by_status(monkeypatch):
    fetch_all = Recorder([{"status": "active", "count": 3}, {"status": "failed", "count": 1}])
    monkeypatch.setattr(enrollment_repository, "fetch_all", fetch_all)

    assert await EnrollmentRepository.count_by_status("SEQ1") == {"active": 3, "failed": 1}


@pytest.mark.asyncio
async def test_config_upsert_round_trips_row(monkeypatch):
    row = {
        "sequence_id": "SEQ1",
        "job_id": "job-1",
        "auto_enroll_enabled": True,
        "trigger_stages": ["phone_screen"],
        "exclude_stages": None,
        "include_existing_candidates": False,
        "updated_at": NOW,
    }
    fetch_one = Recorder(row)
    monkeypatch.setattr(auto_enrollment_repository, "fetch_one", fetch_one)

    stored = await AutoEnrollmentConfigRepository.upsert(
        AutoEnrollmentConfig(
            sequence_id="SEQ1", job_id="job-1", auto_enroll_enabled=True, trigger_stages=["phone_screen"]
        )
    )

    assert stored.exclude_stages == []
    assert stored.updated_at == NOW
    assert "ON CONFLICT (sequence_id) DO UPDATE" in fetch_one.calls[0][0]


@pytest.mark.asyncio
async def test_ledger_record_reports_whether_row_changed(monkeypatch):
    execute_query = Recorder(1, 0)
    monkeypatch.setattr(auto_enrollment_repository, "execute_query", execute_query)

    first = await AutoEnrollmentLedgerRepository.record(
        "SEQ1", "A1", "S1", LedgerDecision.ENROLLED, event_key="S0>S1@"
    )
    second = await AutoEnrollmentLedgerRepository.record(
        "SEQ1", "A1", "S1", LedgerDecision.ENROLLED, event_key="S0>S1@"
    )

    assert (first, second) == (True, False)
    assert execute_query.calls[0][1] == ("SEQ1", "A1", "S1", "enrolled", None, "S0>S1@")
    query = execute_query.calls[0][0]
    assert "DO UPDATE" in query
    assert "decision <> 'excluded'" in query
    assert "IS DISTINCT FROM EXCLUDED.event_key" in query


@pytest.mark.asyncio
async def test_ledger_decision_lookup(monkeypatch):
    monkeypatch.setattr(
        auto_enrollment_repository, "fetch_one", Recorder({"decision": "excluded"}, None)
    )

    assert await AutoEnrollmentLedgerRepository.get_decision("SEQ1", "A1", "S2") == LedgerDecision.EXCLUDED
    assert await AutoEnrollmentLedgerRepository.get_decision("SEQ1", "A1", "S3") is None


@pytest.mark.asyncio
async def test_ledger_decision_matches_event_key(monkeypatch):
    row = {"decision": "enrolled", "event_key": "S0>S1@"}
    monkeypatch.setattr(auto_enrollment_repository, "fetch_one", Recorder(row, row, row))

    same = await AutoEnrollmentLedgerRepository.get_decision("SEQ1", "A1", "S1", event_key="S0>S1@")
    other = await AutoEnrollmentLedgerRepository.get_decision("SEQ1", "A1", "S1", event_key="S3>S1@")
    any_key = await AutoEnrollmentLedgerRepository.get_decision("SEQ1", "A1", "S1")

    assert same == LedgerDecision.ENROLLED
    assert other is None
    assert any_key == LedgerDecision.ENROLLED
