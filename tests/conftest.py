import asyncio
from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from app.features.sequence_enrollment.domain import (
    OPEN_STATUSES,
    AutoEnrollmentConfig,
    DuplicateEnrollment,
    EnrollmentConflict,
    EnrollmentEvent,
    EnrollmentNotFound,
    EnrollmentStatus,
    JobApplication,
    LedgerDecision,
    SequenceDefinition,
    SequenceNotFound,
    SequenceStep,
)
from app.features.sequence_enrollment.repository.enrollment_repository import SORT_COLUMNS
from app.features.sequence_enrollment.services import (
    AutoEnrollmentService,
    BulkEnrollmentOrchestrator,
    EnrollmentLifecycleService,
    EnrollmentQueryService,
    TriggerEvaluator,
)

JOB_ID = "job-1"


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeRedis:
    """Lock and list operations of FastRedisClient, in memory.

    Lists are Python lists with index 0 as the Redis head (left end).
    """

    def __init__(self):
        self.store: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.fail_pushes = False
        self.extensions: list[str] = []

    async def ping(self) -> bool:
        return True

    async def acquire_lock(self, key: str, token: str, ttl_s: int) -> bool:
        if key in self.store:
            return False
        self.store[key] = token
        return True

    async def release_lock(self, key: str, token: str) -> bool:
        if self.store.get(key) == token:
            del self.store[key]
            return True
        return False

    async def extend_lock(self, key: str, token: str, ttl_s: int) -> bool:
        if self.store.get(key) != token:
            return False
        self.extensions.append(key)
        return True

    async def push_to_list(self, key: str, value: str, left: bool = True) -> bool:
        if self.fail_pushes:
            return False
        items = self.lists.setdefault(key, [])
        if left:
            items.insert(0, value)
        else:
            items.append(value)
        return True

    async def pop_to_inflight(self, source_key: str, inflight_key: str, timeout: int = 0):
        items = self.lists.get(source_key)
        if not items:
            return None
        value = items.pop()
        self.lists.setdefault(inflight_key, []).insert(0, value)
        return value

    async def ack_from_inflight(self, inflight_key: str, value: str) -> bool:
        items = self.lists.get(inflight_key, [])
        if value in items:
            items.remove(value)
            return True
        return False

    async def requeue_from_inflight(self, inflight_key: str, destination_key: str, value: str):
        await self.ack_from_inflight(inflight_key, value)
        self.lists.setdefault(destination_key, []).append(value)
        return True

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> list[str]:
        items = self.lists.get(key, [])
        return list(items[start:] if end == -1 else items[start : end + 1])


class InMemoryEnrollmentRepository:
    """Mirrors EnrollmentRepository: open-pair uniqueness and optimistic versions."""

    def __init__(self):
        self.rows = {}
        self.insert_failures: list[Exception] = []

    async def insert(self, enrollment):
        if self.insert_failures:
            raise self.insert_failures.pop(0)
        existing = await self.find_open(enrollment.sequence_id, enrollment.job_application_id)
        if existing:
            raise DuplicateEnrollment(
                enrollment.sequence_id, enrollment.job_application_id, existing_id=existing.id
            )
        stored = replace(enrollment, version=1)
        self.rows[stored.id] = stored
        return stored

    async def get(self, enrollment_id):
        return self.rows.get(enrollment_id)

    async def find_open(self, sequence_id, job_application_id):
        for row in self.rows.values():
            if (
                row.sequence_id == sequence_id
                and row.job_application_id == job_application_id
                and row.status in OPEN_STATUSES
            ):
                return row
        return None

    async def save(self, enrollment, expected_version):
        current = self.rows.get(enrollment.id)
        if current is None:
            raise EnrollmentNotFound(enrollment.id)
        if current.version != expected_version:
            raise EnrollmentConflict(enrollment.id, expected_version)
        stored = replace(enrollment, version=current.version + 1)
        self.rows[stored.id] = stored
        return stored

    def _matches(self, row, filters) -> bool:
        return (
            (not filters.sequence_id or row.sequence_id == filters.sequence_id)
            and (not filters.job_id or row.job_id == filters.job_id)
            and (not filters.status or row.status == filters.status)
            and (
                not filters.enrollment_trigger
                or row.enrollment_trigger == filters.enrollment_trigger
            )
            and (filters.include_removed or row.removed_at is None)
        )

    async def list_page(self, filters, page):
        rows = [row for row in self.rows.values() if self._matches(row, filters)]
        attribute = SORT_COLUMNS[page.sort_by]
        rows.sort(
            key=lambda row: (getattr(row, attribute) is None, getattr(row, attribute), row.id),
            reverse=page.sort_order == "desc",
        )
        return rows[page.offset : page.offset + page.limit], len(rows)

    async def count_by_status(self, sequence_id):
        counts: dict[str, int] = {}
        for row in self.rows.values():
            if row.sequence_id == sequence_id and row.removed_at is None:
                counts[row.status.value] = counts.get(row.status.value, 0) + 1
        return counts

    def open_for(self, sequence_id, job_application_id):
        return [
            row
            for row in self.rows.values()
            if row.sequence_id == sequence_id
            and row.job_application_id == job_application_id
            and row.status in OPEN_STATUSES
        ]


class InMemoryConfigRepository:
    def __init__(self):
        self.configs: dict[str, AutoEnrollmentConfig] = {}

    async def get(self, sequence_id):
        return self.configs.get(sequence_id)

    async def upsert(self, config):
        stored = replace(config, updated_at=datetime.now(UTC))
        self.configs[config.sequence_id] = stored
        return stored

    async def list_enabled_for_job(self, job_id):
        return [
            config
            for config in sorted(self.configs.values(), key=lambda c: c.sequence_id)
            if config.job_id == job_id and config.auto_enroll_enabled
        ]


class InMemoryLedgerRepository:
    """Mirrors AutoEnrollmentLedgerRepository: keyed rows superseded by new events."""

    def __init__(self):
        self.decisions: dict[tuple[str, str, str], tuple[LedgerDecision, str | None]] = {}
        self.event_keys: dict[tuple[str, str, str], str | None] = {}

    async def get_decision(self, sequence_id, job_application_id, stage_id, event_key=None):
        key = (sequence_id, job_application_id, stage_id)
        entry = self.decisions.get(key)
        if entry is None:
            return None
        if event_key is not None and self.event_keys[key] != event_key:
            return None
        return entry[0]

    async def has_exclusion(self, sequence_id, job_application_id):
        return any(
            key[0] == sequence_id and key[1] == job_application_id
            and decision == LedgerDecision.EXCLUDED
            for key, (decision, _) in self.decisions.items()
        )

    async def record(
        self, sequence_id, job_application_id, stage_id, decision, enrollment_id=None, event_key=None
    ):
        key = (sequence_id, job_application_id, stage_id)
        if key in self.decisions:
            if self.decisions[key][0] == LedgerDecision.EXCLUDED or self.event_keys[key] == event_key:
                return False
        self.decisions[key] = (decision, enrollment_id)
        self.event_keys[key] = event_key
        return True


class FakeSequenceClient:
    def __init__(self):
        self.sequences: dict[str, SequenceDefinition] = {}
        self.calls = 0

    def add(self, sequence_id: str, delays: list[int], job_id: str | None = JOB_ID):
        steps = [
            SequenceStep(id=f"{sequence_id}-step-{order}", order=order, delay_minutes=delay)
            for order, delay in enumerate(delays)
        ]
        self.sequences[sequence_id] = SequenceDefinition(id=sequence_id, job_id=job_id, steps=steps)

    async def get_sequence(self, sequence_id):
        self.calls += 1
        if sequence_id not in self.sequences:
            raise SequenceNotFound(sequence_id)
        return self.sequences[sequence_id]


class FakePipelineClient:
    def __init__(self):
        self.applications: dict[str, JobApplication] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.delays: dict[str, float] = {}
        self.in_flight = 0
        self.max_in_flight = 0

    def add(self, application_id: str, job_id: str = JOB_ID, stage_id: str | None = None):
        self.applications[application_id] = JobApplication(
            id=application_id, job_id=job_id, candidate_id=f"cand-{application_id}", stage_id=stage_id
        )

    async def get_application(self, job_application_id):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(job_application_id, 0))
            pending = self.failures.get(job_application_id)
            if pending:
                raise pending.pop(0)
            return self.applications.get(job_application_id)
        finally:
            self.in_flight -= 1

    async def list_applications_in_stages(self, job_id, stage_ids):
        return [
            app
            for app in self.applications.values()
            if app.job_id == job_id and app.stage_id in stage_ids
        ]


class FakeAudit:
    def __init__(self):
        self.events: list[EnrollmentEvent] = []

    async def log_transition(
        self, enrollment_id, action, from_status, to_status, details=None, request_id=None
    ):
        self.events.append(
            EnrollmentEvent(
                enrollment_id=enrollment_id,
                action=action,
                from_status=EnrollmentStatus(from_status) if from_status else None,
                to_status=EnrollmentStatus(to_status),
                created_at=datetime.now(UTC),
                request_id=request_id,
                details=details or {},
            )
        )
        return True

    async def list_events(self, enrollment_id):
        return [event for event in self.events if event.enrollment_id == enrollment_id]

    def actions_for(self, enrollment_id) -> list[str]:
        return [event.action for event in self.events if event.enrollment_id == enrollment_id]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def enrollment_repo():
    return InMemoryEnrollmentRepository()


@pytest.fixture
def config_repo():
    return InMemoryConfigRepository()


@pytest.fixture
def ledger_repo():
    return InMemoryLedgerRepository()


@pytest.fixture
def audit():
    return FakeAudit()


@pytest.fixture
def sequences():
    client = FakeSequenceClient()
    client.add("SEQ1", [0, 60 * 24, 60 * 72])
    client.add("SEQ2", [30, 60])
    client.add("EMPTY", [])
    return client


@pytest.fixture
def pipeline():
    client = FakePipelineClient()
    for application_id in ("A1", "A2", "A3", "A4", "A5"):
        client.add(application_id)
    return client


@pytest.fixture
def lifecycle(sequences, pipeline, enrollment_repo, audit, clock):
    return EnrollmentLifecycleService(
        sequences, pipeline, enrollments=enrollment_repo, audit=audit, clock=clock
    )


@pytest.fixture
def bulk(lifecycle, sequences):
    return BulkEnrollmentOrchestrator(
        lifecycle,
        sequences,
        max_concurrency=4,
        max_items=50,
        max_retries=2,
        retry_base_delay=0,
        timeout_s=5,
    )


@pytest.fixture
def evaluator(lifecycle, pipeline, config_repo, ledger_repo):
    return TriggerEvaluator(lifecycle, pipeline, configs=config_repo, ledger=ledger_repo)


@pytest.fixture
def auto_enrollment(sequences, pipeline, bulk, config_repo, ledger_repo, fake_redis):
    return AutoEnrollmentService(
        sequences,
        pipeline,
        bulk,
        configs=config_repo,
        ledger=ledger_repo,
        redis=fake_redis,
        lock_ttl_s=60,
        lock_max_retries=2,
        lock_base_delay=0,
    )


@pytest.fixture
def queries(enrollment_repo, audit):
    return EnrollmentQueryService(enrollment_repo, audit, default_limit=20, max_limit=100)
