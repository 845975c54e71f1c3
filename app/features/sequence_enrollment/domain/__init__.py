"""
Domain subpackage for the sequence enrollment feature.
"""

from .errors import (
    ApplicationNotFound,
    AutoEnrollmentConfigNotFound,
    CollaboratorError,
    ConfigConflict,
    DuplicateEnrollment,
    EnrollmentConflict,
    EnrollmentError,
    EnrollmentNotFound,
    EventQueueUnavailable,
    InvalidAutoEnrollmentConfig,
    InvalidBulkRequest,
    InvalidQuery,
    InvalidSequence,
    InvalidTransition,
    InvalidUpdate,
    NotFound,
    SequenceNotFound,
)
from .models import (
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    AutoEnrollmentConfig,
    BulkEnrollmentResult,
    BulkFailure,
    Enrollment,
    EnrollmentEvent,
    EnrollmentFilters,
    EnrollmentPage,
    EnrollmentStatus,
    EnrollmentTrigger,
    JobApplication,
    LedgerDecision,
    PageRequest,
    SequenceDefinition,
    SequenceStep,
    StageChangeEvent,
    TriggerAction,
    TriggerOutcome,
)

__all__ = [
    "OPEN_STATUSES",
    "TERMINAL_STATUSES",
    "ApplicationNotFound",
    "AutoEnrollmentConfig",
    "AutoEnrollmentConfigNotFound",
    "BulkEnrollmentResult",
    "BulkFailure",
    "CollaboratorError",
    "ConfigConflict",
    "DuplicateEnrollment",
    "Enrollment",
    "EnrollmentConflict",
    "EnrollmentError",
    "EnrollmentEvent",
    "EnrollmentFilters",
    "EnrollmentNotFound",
    "EnrollmentPage",
    "EnrollmentStatus",
    "EnrollmentTrigger",
    "EventQueueUnavailable",
    "InvalidAutoEnrollmentConfig",
    "InvalidBulkRequest",
    "InvalidQuery",
    "InvalidSequence",
    "InvalidTransition",
    "InvalidUpdate",
    "JobApplication",
    "LedgerDecision",
    "NotFound",
    "PageRequest",
    "SequenceDefinition",
    "SequenceNotFound",
    "SequenceStep",
    "StageChangeEvent",
    "TriggerAction",
    "TriggerOutcome",
]
