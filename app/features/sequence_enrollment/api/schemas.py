"""
Request and response models for the sequence enrollment API.

JSON bodies are camelCase; Python attributes stay snake_case.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.features.sequence_enrollment.domain import (
    AutoEnrollmentConfig,
    BulkEnrollmentResult,
    Enrollment,
    EnrollmentEvent,
    EnrollmentPage,
    EnrollmentStatus,
    EnrollmentTrigger,
    TriggerAction,
    TriggerOutcome,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class EnrollmentCreateRequest(CamelModel):
    sequence_id: str = Field(..., min_length=1)
    job_application_id: str = Field(..., min_length=1)
    enrollment_trigger: EnrollmentTrigger = EnrollmentTrigger.MANUAL
    metadata: dict[str, Any] = Field(default_factory=dict)


class BulkEnrollmentRequest(CamelModel):
    sequence_id: str = Field(..., min_length=1)
    job_application_ids: list[str] = Field(..., min_length=1)
    enrollment_trigger: EnrollmentTrigger = EnrollmentTrigger.MANUAL
    metadata: dict[str, Any] = Field(default_factory=dict)


class EnrollmentUpdateRequest(CamelModel):
    """Partial update. ``current_step_order`` advances the enrollment to that step."""

    metadata: dict[str, Any] | None = None
    current_step_order: int | None = Field(default=None, ge=0)
    current_step_id: str | None = None
    next_execution_at: datetime | None = None


class MarkFailedRequest(CamelModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class AutoEnrollmentConfigRequest(CamelModel):
    auto_enroll_enabled: bool
    trigger_stages: list[str] = Field(default_factory=list)
    exclude_stages: list[str] = Field(default_factory=list)
    include_existing_candidates: bool = False


class StageChangeEventRequest(CamelModel):
    job_application_id: str = Field(..., min_length=1)
    new_stage_id: str = Field(..., min_length=1)
    previous_stage_id: str | None = None
    occurred_at: datetime | None = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class EnrollmentResponse(CamelModel):
    id: str
    sequence_id: str
    job_application_id: str
    job_id: str | None
    status: EnrollmentStatus
    enrollment_trigger: EnrollmentTrigger
    current_step_id: str | None
    current_step_order: int
    total_steps_completed: int
    next_execution_at: datetime | None
    last_executed_at: datetime | None
    completed_at: datetime | None
    paused_at: datetime | None
    removed_at: datetime | None
    enrolled_at: datetime
    updated_at: datetime
    metadata: dict[str, Any]
    execution_log: list[dict[str, Any]]
    version: int

    @classmethod
    def from_domain(cls, enrollment: Enrollment) -> "EnrollmentResponse":
        return cls(
            id=enrollment.id,
            sequence_id=enrollment.sequence_id,
            job_application_id=enrollment.job_application_id,
            job_id=enrollment.job_id,
            status=enrollment.status,
            enrollment_trigger=enrollment.enrollment_trigger,
            current_step_id=enrollment.current_step_id,
            current_step_order=enrollment.current_step_order,
            total_steps_completed=enrollment.total_steps_completed,
            next_execution_at=enrollment.next_execution_at,
            last_executed_at=enrollment.last_executed_at,
            completed_at=enrollment.completed_at,
            paused_at=enrollment.paused_at,
            removed_at=enrollment.removed_at,
            enrolled_at=enrollment.enrolled_at,
            updated_at=enrollment.updated_at,
            metadata=enrollment.metadata,
            execution_log=enrollment.execution_log,
            version=enrollment.version,
        )


class PaginationMeta(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_previous: bool


class EnrollmentListResponse(CamelModel):
    data: list[EnrollmentResponse]
    pagination: PaginationMeta

    @classmethod
    def from_domain(cls, page: EnrollmentPage) -> "EnrollmentListResponse":
        return cls(
            data=[EnrollmentResponse.from_domain(item) for item in page.items],
            pagination=PaginationMeta(
                page=page.page,
                limit=page.limit,
                total=page.total,
                total_pages=page.total_pages,
                has_next=page.has_next,
                has_previous=page.has_previous,
            ),
        )


class BulkFailureResponse(CamelModel):
    job_application_id: str
    reason: str


class BulkEnrollmentResponse(CamelModel):
    created: list[EnrollmentResponse]
    skipped: list[str]
    failed: list[BulkFailureResponse]
    requested: int
    partial_failure: bool

    @classmethod
    def from_domain(cls, result: BulkEnrollmentResult) -> "BulkEnrollmentResponse":
        return cls(
            created=[EnrollmentResponse.from_domain(item) for item in result.created],
            skipped=result.skipped,
            failed=[
                BulkFailureResponse(job_application_id=f.job_application_id, reason=f.reason)
                for f in result.failed
            ],
            requested=result.requested,
            partial_failure=result.partial_failure,
        )


class AutoEnrollmentConfigResponse(CamelModel):
    sequence_id: str
    job_id: str | None
    auto_enroll_enabled: bool
    trigger_stages: list[str]
    exclude_stages: list[str]
    include_existing_candidates: bool
    updated_at: datetime | None
    sweep: BulkEnrollmentResponse | None = None

    @classmethod
    def from_domain(
        cls, config: AutoEnrollmentConfig, sweep: BulkEnrollmentResult | None = None
    ) -> "AutoEnrollmentConfigResponse":
        return cls(
            sequence_id=config.sequence_id,
            job_id=config.job_id,
            auto_enroll_enabled=config.auto_enroll_enabled,
            trigger_stages=config.trigger_stages,
            exclude_stages=config.exclude_stages,
            include_existing_candidates=config.include_existing_candidates,
            updated_at=config.updated_at,
            sweep=BulkEnrollmentResponse.from_domain(sweep) if sweep else None,
        )


class EnrollmentStatsResponse(CamelModel):
    sequence_id: str
    total: int
    active: int
    paused: int
    completed: int
    failed: int
    unsubscribed: int


class EnrollmentEventResponse(CamelModel):
    action: str
    from_status: EnrollmentStatus | None
    to_status: EnrollmentStatus
    created_at: datetime
    request_id: str | None
    details: dict[str, Any]

    @classmethod
    def from_domain(cls, event: EnrollmentEvent) -> "EnrollmentEventResponse":
        return cls(
            action=event.action,
            from_status=event.from_status,
            to_status=event.to_status,
            created_at=event.created_at,
            request_id=event.request_id,
            details=event.details,
        )


class TriggerOutcomeResponse(CamelModel):
    sequence_id: str
    job_application_id: str
    stage_id: str
    action: TriggerAction
    reason: str | None
    enrollment_id: str | None

    @classmethod
    def from_domain(cls, outcome: TriggerOutcome) -> "TriggerOutcomeResponse":
        return cls(
            sequence_id=outcome.sequence_id,
            job_application_id=outcome.job_application_id,
            stage_id=outcome.stage_id,
            action=outcome.action,
            reason=outcome.reason,
            enrollment_id=outcome.enrollment_id,
        )


class StageEventResponse(CamelModel):
    mode: Literal["sync", "queue"]
    outcomes: list[TriggerOutcomeResponse] = Field(default_factory=list)
    partition: int | None = None
