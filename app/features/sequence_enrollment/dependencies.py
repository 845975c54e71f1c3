"""
Process-wide service instances for the sequence enrollment feature.

Built lazily on first use so importing the API module never opens HTTP
clients. Routes receive them through FastAPI ``Depends``; tests swap them
with ``app.dependency_overrides``.
"""

from app.features.sequence_enrollment.clients import PipelineClient, SequenceDefinitionClient
from app.features.sequence_enrollment.services import (
    AutoEnrollmentService,
    BulkEnrollmentOrchestrator,
    EnrollmentLifecycleService,
    EnrollmentQueryService,
    TriggerEvaluator,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

_instances: dict[str, object] = {}


def _get_or_create(name: str, factory):
    instance = _instances.get(name)
    if instance is None:
        instance = factory()
        _instances[name] = instance
    return instance


def get_sequence_client() -> SequenceDefinitionClient:
    return _get_or_create("sequence_client", SequenceDefinitionClient)


def get_pipeline_client() -> PipelineClient:
    return _get_or_create("pipeline_client", PipelineClient)


def get_lifecycle_service() -> EnrollmentLifecycleService:
    return _get_or_create(
        "lifecycle",
        lambda: EnrollmentLifecycleService(get_sequence_client(), get_pipeline_client()),
    )


def get_bulk_orchestrator() -> BulkEnrollmentOrchestrator:
    return _get_or_create(
        "bulk",
        lambda: BulkEnrollmentOrchestrator(get_lifecycle_service(), get_sequence_client()),
    )


def get_trigger_evaluator() -> TriggerEvaluator:
    # One instance per process so its per-application locks are shared
    return _get_or_create(
        "trigger_evaluator",
        lambda: TriggerEvaluator(get_lifecycle_service(), get_pipeline_client()),
    )


def get_auto_enrollment_service() -> AutoEnrollmentService:
    return _get_or_create(
        "auto_enrollment",
        lambda: AutoEnrollmentService(
            get_sequence_client(), get_pipeline_client(), get_bulk_orchestrator()
        ),
    )


def get_query_service() -> EnrollmentQueryService:
    return _get_or_create("query", EnrollmentQueryService)


async def close_collaborators() -> None:
    """Close HTTP clients and forget every cached service."""
    for name in ("sequence_client", "pipeline_client"):
        client = _instances.get(name)
        if client is None:
            continue
        try:
            await client.close()
        except Exception as e:
            logger.error("Error closing collaborator client", client=name, error=str(e))
    _instances.clear()
