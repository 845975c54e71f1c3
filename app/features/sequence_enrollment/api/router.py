"""
Sequence enrollment routes.

Usage:
    GET    /sequence-enrollments/enrollments                       - filtered, paginated list
    GET    /sequence-enrollments/sequences/{id}/enrollments        - list for one sequence
    GET    /sequence-enrollments/sequences/{id}/enrollments/stats  - counts by status
    POST   /sequence-enrollments/enrollments                       - enroll one application
    POST   /sequence-enrollments/enrollments/bulk                  - enroll many, itemized result
    GET    /sequence-enrollments/enrollments/{id}                  - one enrollment
    GET    /sequence-enrollments/enrollments/{id}/events           - transition trail
    PATCH  /sequence-enrollments/enrollments/{id}/pause
    PATCH  /sequence-enrollments/enrollments/{id}/resume
    PATCH  /sequence-enrollments/enrollments/{id}                  - metadata and/or advance
    POST   /sequence-enrollments/enrollments/{id}/fail
    DELETE /sequence-enrollments/enrollments/{id}                  - idempotent removal
    GET    /sequence-enrollments/sequences/{id}/auto-enrollment
    POST   /sequence-enrollments/sequences/{id}/auto-enrollment
    POST   /sequence-enrollments/pipeline-events                   - stage change intake

Domain exceptions propagate to the handlers in api/errors.py.
"""

from datetime import UTC, datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query, Response, status

from app.features.sequence_enrollment.dependencies import (
    get_auto_enrollment_service,
    get_bulk_orchestrator,
    get_lifecycle_service,
    get_query_service,
    get_trigger_evaluator,
)
from app.features.sequence_enrollment.domain import (
    EnrollmentFilters,
    EnrollmentStatus,
    EnrollmentTrigger,
    StageChangeEvent,
)
from app.features.sequence_enrollment.services import (
    AutoEnrollmentService,
    BulkEnrollmentOrchestrator,
    EnrollmentLifecycleService,
    EnrollmentQueryService,
    TriggerEvaluator,
    enqueue_stage_event,
)
from app.infrastructure.observability.logging import get_logger

from .schemas import (
    AutoEnrollmentConfigRequest,
    AutoEnrollmentConfigResponse,
    BulkEnrollmentRequest,
    BulkEnrollmentResponse,
    EnrollmentCreateRequest,
    EnrollmentEventResponse,
    EnrollmentListResponse,
    EnrollmentResponse,
    EnrollmentStatsResponse,
    EnrollmentUpdateRequest,
    MarkFailedRequest,
    StageChangeEventRequest,
    StageEventResponse,
    TriggerOutcomeResponse,
)

router = APIRouter(prefix="/sequence-enrollments", tags=["sequence-enrollments"])
logger = get_logger(__name__)


async def _list(
    queries: EnrollmentQueryService,
    filters: EnrollmentFilters,
    page: int,
    limit: int | None,
    sort_by: str | None,
    sort_order: str | None,
) -> EnrollmentListResponse:
    page_request = queries.build_page_request(page, limit, sort_by, sort_order)
    result = await queries.list_enrollments(filters, page_request)
    return EnrollmentListResponse.from_domain(result)


@router.get("/enrollments", response_model=EnrollmentListResponse)
async def list_enrollments(
    sequence_id: str | None = Query(default=None, alias="sequenceId"),
    job_id: str | None = Query(default=None, alias="jobId"),
    enrollment_status: EnrollmentStatus | None = Query(default=None, alias="status"),
    trigger: EnrollmentTrigger | None = Query(default=None),
    include_removed: bool = Query(default=False, alias="includeRemoved"),
    page: int = Query(default=1),
    limit: int | None = Query(default=None),
    sort_by: str | None = Query(default=None, alias="sortBy"),
    sort_order: str | None = Query(default=None, alias="sortOrder"),
    queries: EnrollmentQueryService = Depends(get_query_service),
):
    filters = EnrollmentFilters(
        sequence_id=sequence_id,
        job_id=job_id,
        status=enrollment_status,
        enrollment_trigger=trigger,
        include_removed=include_removed,
    )
    return await _list(queries, filters, page, limit, sort_by, sort_order)


@router.get("/sequences/{sequence_id}/enrollments", response_model=EnrollmentListResponse)
async def list_sequence_enrollments(
    sequence_id: str,
    enrollment_status: EnrollmentStatus | None = Query(default=None, alias="status"),
    trigger: EnrollmentTrigger | None = Query(default=None),
    include_removed: bool = Query(default=False, alias="includeRemoved"),
    page: int = Query(default=1),
    limit: int | None = Query(default=None),
    sort_by: str | None = Query(default=None, alias="sortBy"),
    sort_order: str | None = Query(default=None, alias="sortOrder"),
    queries: EnrollmentQueryService = Depends(get_query_service),
):
    filters = EnrollmentFilters(
        sequence_id=sequence_id,
        status=enrollment_status,
        enrollment_trigger=trigger,
        include_removed=include_removed,
    )
    return await _list(queries, filters, page, limit, sort_by, sort_order)


@router.get(
    "/sequences/{sequence_id}/enrollments/stats", response_model=EnrollmentStatsResponse
)
async def get_sequence_stats(
    sequence_id: str, queries: EnrollmentQueryService = Depends(get_query_service)
):
    stats = await queries.stats(sequence_id)
    return EnrollmentStatsResponse(sequence_id=sequence_id, **stats)


@router.post(
    "/enrollments", response_model=EnrollmentResponse, status_code=status.HTTP_201_CREATED
)
async def create_enrollment(
    request: EnrollmentCreateRequest,
    lifecycle: EnrollmentLifecycleService = Depends(get_lifecycle_service),
):
    """
    Enroll one job application.

    Raises:
        404: unknown sequence or job application
        409: application already has an active or paused enrollment in the sequence
    """
    enrollment = await lifecycle.create(
        request.sequence_id,
        request.job_application_id,
        request.enrollment_trigger,
        request.metadata,
    )
    return EnrollmentResponse.from_domain(enrollment)


@router.post("/enrollments/bulk", response_model=BulkEnrollmentResponse)
async def bulk_enroll(
    request: BulkEnrollmentRequest,
    bulk: BulkEnrollmentOrchestrator = Depends(get_bulk_orchestrator),
):
    """Always 200 once the sequence is known; per-item failures are itemized."""
    result = await bulk.enroll(
        request.sequence_id,
        request.job_application_ids,
        request.enrollment_trigger,
        request.metadata,
    )
    return BulkEnrollmentResponse.from_domain(result)


@router.get("/enrollments/{enrollment_id}", response_model=EnrollmentResponse)
async def get_enrollment(
    enrollment_id: str, queries: EnrollmentQueryService = Depends(get_query_service)
):
    return EnrollmentResponse.from_domain(await queries.get(enrollment_id))


@router.get("/enrollments/{enrollment_id}/events", response_model=list[EnrollmentEventResponse])
async def get_enrollment_events(
    enrollment_id: str, queries: EnrollmentQueryService = Depends(get_query_service)
):
    events = await queries.events(enrollment_id)
    return [EnrollmentEventResponse.from_domain(event) for event in events]


@router.patch("/enrollments/{enrollment_id}/pause", response_model=EnrollmentResponse)
async def pause_enrollment(
    enrollment_id: str,
    lifecycle: EnrollmentLifecycleService = Depends(get_lifecycle_service),
):
    return EnrollmentResponse.from_domain(await lifecycle.pause(enrollment_id))


@router.patch("/enrollments/{enrollment_id}/resume", response_model=EnrollmentResponse)
async def resume_enrollment(
    enrollment_id: str,
    lifecycle: EnrollmentLifecycleService = Depends(get_lifecycle_service),
):
    return EnrollmentResponse.from_domain(await lifecycle.resume(enrollment_id))


@router.patch("/enrollments/{enrollment_id}", response_model=EnrollmentResponse)
async def update_enrollment(
    enrollment_id: str,
    request: EnrollmentUpdateRequest,
    lifecycle: EnrollmentLifecycleService = Depends(get_lifecycle_service),
):
    enrollment = await lifecycle.update(
        enrollment_id,
        metadata=request.metadata,
        next_step_order=request.current_step_order,
        next_step_id=request.current_step_id,
        next_execution_at=request.next_execution_at,
    )
    return EnrollmentResponse.from_domain(enrollment)


@router.post("/enrollments/{enrollment_id}/fail", response_model=EnrollmentResponse)
async def fail_enrollment(
    enrollment_id: str,
    request: MarkFailedRequest,
    lifecycle: EnrollmentLifecycleService = Depends(get_lifecycle_service),
):
    return EnrollmentResponse.from_domain(
        await lifecycle.mark_failed(enrollment_id, request.reason)
    )


@router.delete("/enrollments/{enrollment_id}", response_model=EnrollmentResponse)
async def remove_enrollment(
    enrollment_id: str,
    lifecycle: EnrollmentLifecycleService = Depends(get_lifecycle_service),
):
    """Idempotent: removing an already removed enrollment returns it unchanged."""
    return EnrollmentResponse.from_domain(await lifecycle.remove(enrollment_id))


@router.get(
    "/sequences/{sequence_id}/auto-enrollment", response_model=AutoEnrollmentConfigResponse
)
async def get_auto_enrollment_config(
    sequence_id: str,
    auto_enrollment: AutoEnrollmentService = Depends(get_auto_enrollment_service),
):
    config = await auto_enrollment.get_config(sequence_id)
    return AutoEnrollmentConfigResponse.from_domain(config)


@router.post(
    "/sequences/{sequence_id}/auto-enrollment", response_model=AutoEnrollmentConfigResponse
)
async def set_auto_enrollment_config(
    sequence_id: str,
    request: AutoEnrollmentConfigRequest,
    auto_enrollment: AutoEnrollmentService = Depends(get_auto_enrollment_service),
):
    """
    Store the config; enabling it with includeExistingCandidates runs the
    retroactive sweep before responding.

    Raises:
        422: a stage is listed as both trigger and exclude
        409: another update or sweep is still running for this sequence
    """
    result = await auto_enrollment.set_config(
        sequence_id,
        auto_enroll_enabled=request.auto_enroll_enabled,
        trigger_stages=request.trigger_stages,
        exclude_stages=request.exclude_stages,
        include_existing_candidates=request.include_existing_candidates,
    )
    return AutoEnrollmentConfigResponse.from_domain(result.config, result.sweep)


@router.post("/pipeline-events", response_model=StageEventResponse)
async def receive_pipeline_event(
    request: StageChangeEventRequest,
    response: Response,
    mode: Literal["sync", "queue"] = Query(default="sync"),
    evaluator: TriggerEvaluator = Depends(get_trigger_evaluator),
):
    event = StageChangeEvent(
        job_application_id=request.job_application_id,
        new_stage_id=request.new_stage_id,
        previous_stage_id=request.previous_stage_id,
        occurred_at=request.occurred_at or datetime.now(UTC),
    )

    if mode == "queue":
        partition = await enqueue_stage_event(event)
        response.status_code = status.HTTP_202_ACCEPTED
        return StageEventResponse(mode="queue", partition=partition)

    outcomes = await evaluator.evaluate(event)
    return StageEventResponse(
        mode="sync",
        outcomes=[TriggerOutcomeResponse.from_domain(outcome) for outcome in outcomes],
    )
