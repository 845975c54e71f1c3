"""
Service layer for the sequence enrollment feature.
"""

from .auto_enrollment_service import AutoEnrollmentService, ConfigUpdateResult
from .bulk_enrollment import BulkEnrollmentOrchestrator
from .event_queue import enqueue_stage_event, partition_for
from .lifecycle_service import EnrollmentLifecycleService
from .query_service import EnrollmentQueryService
from .sequencing import KeyedLock
from .trigger_evaluator import TriggerEvaluator

__all__ = [
    "AutoEnrollmentService",
    "BulkEnrollmentOrchestrator",
    "ConfigUpdateResult",
    "EnrollmentLifecycleService",
    "EnrollmentQueryService",
    "KeyedLock",
    "TriggerEvaluator",
    "enqueue_stage_event",
    "partition_for",
]
