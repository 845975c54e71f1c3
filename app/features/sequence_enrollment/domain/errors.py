"""
Exceptions raised by the sequence enrollment engine.

The API layer maps these onto HTTP statuses in api/errors.py.
"""


class EnrollmentError(Exception):
    """Base exception for enrollment operations."""

    code = "enrollment_error"

    def __init__(self, message: str, recoverable: bool = False, **context):
        super().__init__(message)
        self.message = message
        self.recoverable = recoverable
        self.context = context


class NotFound(EnrollmentError):
    code = "not_found"


class EnrollmentNotFound(NotFound):
    code = "enrollment_not_found"

    def __init__(self, enrollment_id: str):
        super().__init__(f"Enrollment {enrollment_id} not found", enrollment_id=enrollment_id)
        self.enrollment_id = enrollment_id


class SequenceNotFound(NotFound):
    code = "sequence_not_found"

    def __init__(self, sequence_id: str):
        super().__init__(f"Sequence {sequence_id} not found", sequence_id=sequence_id)
        self.sequence_id = sequence_id


class ApplicationNotFound(NotFound):
    code = "job_application_not_found"

    def __init__(self, job_application_id: str):
        super().__init__(
            f"Job application {job_application_id} not found",
            job_application_id=job_application_id,
        )
        self.job_application_id = job_application_id


class AutoEnrollmentConfigNotFound(NotFound):
    code = "auto_enrollment_config_not_found"

    def __init__(self, sequence_id: str):
        super().__init__(
            f"No auto-enrollment configuration for sequence {sequence_id}",
            sequence_id=sequence_id,
        )
        self.sequence_id = sequence_id


class DuplicateEnrollment(EnrollmentError):
    code = "duplicate_enrollment"

    def __init__(self, sequence_id: str, job_application_id: str, existing_id: str | None = None):
        super().__init__(
            f"Job application {job_application_id} already has an open enrollment "
            f"in sequence {sequence_id}",
            sequence_id=sequence_id,
            job_application_id=job_application_id,
            existing_id=existing_id,
        )
        self.sequence_id = sequence_id
        self.job_application_id = job_application_id
        self.existing_id = existing_id


class InvalidTransition(EnrollmentError):
    code = "invalid_transition"

    def __init__(self, enrollment_id: str, action: str, current_status: str):
        super().__init__(
            f"Cannot {action} enrollment {enrollment_id} in status '{current_status}'",
            enrollment_id=enrollment_id,
            action=action,
            current_status=current_status,
        )
        self.enrollment_id = enrollment_id
        self.action = action
        self.current_status = current_status


class EnrollmentConflict(EnrollmentError):
    """A concurrent writer changed the enrollment between read and write."""

    code = "enrollment_conflict"

    def __init__(self, enrollment_id: str, expected_version: int):
        super().__init__(
            f"Enrollment {enrollment_id} was modified concurrently",
            enrollment_id=enrollment_id,
            expected_version=expected_version,
        )
        self.enrollment_id = enrollment_id


class ConfigConflict(EnrollmentError):
    """Auto-enrollment config is locked by an in-flight retroactive sweep."""

    code = "auto_enrollment_config_conflict"

    def __init__(self, sequence_id: str):
        super().__init__(
            f"Auto-enrollment for sequence {sequence_id} is being updated, try again shortly",
            recoverable=True,
            sequence_id=sequence_id,
        )
        self.sequence_id = sequence_id


class InvalidAutoEnrollmentConfig(EnrollmentError):
    code = "invalid_auto_enrollment_config"


class InvalidSequence(EnrollmentError):
    code = "invalid_sequence"


class InvalidBulkRequest(EnrollmentError):
    code = "invalid_bulk_request"


class CollaboratorError(EnrollmentError):
    """Sequence definition or pipeline service call failed."""

    code = "collaborator_error"

    def __init__(self, message: str, service: str, status_code: int | None = None, recoverable: bool = True):
        super().__init__(message, recoverable=recoverable, service=service, status_code=status_code)
        self.service = service
        self.status_code = status_code


class InvalidUpdate(EnrollmentError):
    code = "invalid_update"


class InvalidQuery(EnrollmentError):
    code = "invalid_query"


class EventQueueUnavailable(EnrollmentError):
    code = "event_queue_unavailable"

    def __init__(self, message: str = "Stage event queue is unavailable"):
        super().__init__(message, recoverable=True)
