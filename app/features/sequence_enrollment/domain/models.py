"""
Domain models for the sequence enrollment feature.

Plain dataclasses shared by repositories, services and the API layer.
Status changes are applied by the state machine module, never by
mutating these records in place.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"  # terminal
    FAILED = "failed"  # terminal
    UNSUBSCRIBED = "unsubscribed"  # terminal


OPEN_STATUSES = frozenset({EnrollmentStatus.ACTIVE, EnrollmentStatus.PAUSED})
TERMINAL_STATUSES = frozenset(
    {EnrollmentStatus.COMPLETED, EnrollmentStatus.FAILED, EnrollmentStatus.UNSUBSCRIBED}
)


class EnrollmentTrigger(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    PIPELINE_STAGE = "pipeline_stage"


class LedgerDecision(str, Enum):
    """What the trigger evaluator decided for one (sequence, application, stage)."""

    ENROLLED = "enrolled"
    EXCLUDED = "excluded"
    SKIPPED_EXISTING = "skipped_existing"


class TriggerAction(str, Enum):
    """What evaluating one stage-change event did to one sequence."""

    ENROLLED = "enrolled"
    UNSUBSCRIBED = "unsubscribed"
    EXCLUDED = "excluded"
    NOOP = "noop"


@dataclass(slots=True)
class Enrollment:
    """One job application's participation in one outreach sequence."""

    id: str
    sequence_id: str
    job_application_id: str
    status: EnrollmentStatus
    enrollment_trigger: EnrollmentTrigger
    enrolled_at: datetime
    updated_at: datetime
    job_id: str | None = None
    current_step_id: str | None = None
    current_step_order: int = 0
    total_steps_completed: int = 0
    next_execution_at: datetime | None = None
    last_executed_at: datetime | None = None
    completed_at: datetime | None = None
    paused_at: datetime | None = None
    removed_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    execution_log: list[dict[str, Any]] = field(default_factory=list)
    version: int = 1

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_removed(self) -> bool:
        return self.removed_at is not None


@dataclass(slots=True)
class AutoEnrollmentConfig:
    """Per-sequence trigger/exclude stage configuration."""

    sequence_id: str
    auto_enroll_enabled: bool = False
    trigger_stages: list[str] = field(default_factory=list)
    exclude_stages: list[str] = field(default_factory=list)
    include_existing_candidates: bool = False
    job_id: str | None = None
    updated_at: datetime | None = None

    def overlapping_stages(self) -> set[str]:
        return set(self.trigger_stages) & set(self.exclude_stages)

    def is_trigger_stage(self, stage_id: str) -> bool:
        return stage_id in self.trigger_stages

    def is_exclude_stage(self, stage_id: str) -> bool:
        return stage_id in self.exclude_stages


@dataclass(slots=True)
class StageChangeEvent:
    """A job application moved between recruitment pipeline stages."""

    job_application_id: str
    new_stage_id: str
    previous_stage_id: str | None = None
    occurred_at: datetime | None = None

    @property
    def dedup_key(self) -> str:
        """Identifies one stage move; redeliveries of the same move share it."""
        occurred = self.occurred_at.isoformat() if self.occurred_at else ""
        return f"{self.previous_stage_id or ''}>{self.new_stage_id}@{occurred}"

    def to_json(self) -> str:
        return json.dumps(
            {
                "jobApplicationId": self.job_application_id,
                "newStageId": self.new_stage_id,
                "previousStageId": self.previous_stage_id,
                "occurredAt": self.occurred_at.isoformat() if self.occurred_at else None,
            }
        )

    @classmethod
    def from_json(cls, payload: str) -> "StageChangeEvent":
        data = json.loads(payload)
        occurred_at = data.get("occurredAt")
        return cls(
            job_application_id=data["jobApplicationId"],
            new_stage_id=data["newStageId"],
            previous_stage_id=data.get("previousStageId"),
            occurred_at=datetime.fromisoformat(occurred_at) if occurred_at else None,
        )


@dataclass(slots=True)
class SequenceStep:
    id: str
    order: int
    delay_minutes: int = 0


@dataclass(slots=True)
class SequenceDefinition:
    """Ordered step list owned by the sequence definition service."""

    id: str
    job_id: str | None
    steps: list[SequenceStep]

    @property
    def step_count(self) -> int:
        return len(self.steps)

    def step_at(self, order: int) -> SequenceStep | None:
        for step in self.steps:
            if step.order == order:
                return step
        return None

    def next_execution_at(self, order: int, now: datetime) -> datetime | None:
        """When the step at ``order`` is due if it is scheduled from ``now``."""
        step = self.step_at(order)
        if step is None:
            return None
        return now + timedelta(minutes=step.delay_minutes)


@dataclass(slots=True)
class JobApplication:
    """A candidate's application to a specific job, as seen by the pipeline service."""

    id: str
    job_id: str
    candidate_id: str | None = None
    stage_id: str | None = None


@dataclass(slots=True)
class BulkFailure:
    job_application_id: str
    reason: str


@dataclass(slots=True)
class BulkEnrollmentResult:
    created: list[Enrollment] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[BulkFailure] = field(default_factory=list)

    @property
    def requested(self) -> int:
        return len(self.created) + len(self.skipped) + len(self.failed)

    @property
    def partial_failure(self) -> bool:
        return bool(self.failed)


@dataclass(slots=True)
class EnrollmentFilters:
    sequence_id: str | None = None
    job_id: str | None = None
    status: EnrollmentStatus | None = None
    enrollment_trigger: EnrollmentTrigger | None = None
    include_removed: bool = False


@dataclass(slots=True)
class PageRequest:
    page: int = 1
    limit: int = 20
    sort_by: str = "enrolledAt"
    sort_order: str = "desc"

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass(slots=True)
class EnrollmentPage:
    items: list[Enrollment]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self.page > 1


@dataclass(slots=True)
class EnrollmentEvent:
    """Row of the per-enrollment transition audit trail."""

    enrollment_id: str
    action: str
    from_status: EnrollmentStatus | None
    to_status: EnrollmentStatus
    created_at: datetime
    request_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TriggerOutcome:
    """Result of evaluating one stage-change event against one sequence config."""

    sequence_id: str
    job_application_id: str
    stage_id: str
    action: TriggerAction = TriggerAction.NOOP
    reason: str | None = None
    enrollment_id: str | None = None
