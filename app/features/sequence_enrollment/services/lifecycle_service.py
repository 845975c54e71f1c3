"""
Enrollment lifecycle service.

Every create and every status change of an enrollment goes through here:
load the row, apply a state machine transition, write it back with an
optimistic version check, then record the transition in the audit trail.
"""

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from app.features.sequence_enrollment.domain import (
    ApplicationNotFound,
    DuplicateEnrollment,
    Enrollment,
    EnrollmentConflict,
    EnrollmentNotFound,
    EnrollmentTrigger,
    InvalidSequence,
    InvalidTransition,
    InvalidUpdate,
    JobApplication,
    SequenceDefinition,
)
from app.features.sequence_enrollment.domain import state_machine
from app.features.sequence_enrollment.repository.enrollment_repository import (
    EnrollmentRepository,
)
from app.infrastructure.audit import audit_logger
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Reload-and-retry budget for idempotent operations (remove, exclusion unsubscribe)
IDEMPOTENT_RETRIES = 3

Transition = Callable[[Enrollment, datetime], Awaitable[Enrollment]]


def utc_now() -> datetime:
    return datetime.now(UTC)


class EnrollmentLifecycleService:
    def __init__(
        self,
        sequences,
        pipeline,
        enrollments=EnrollmentRepository,
        audit=audit_logger,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.sequences = sequences
        self.pipeline = pipeline
        self.enrollments = enrollments
        self.audit = audit
        self.clock = clock

    async def get(self, enrollment_id: str) -> Enrollment:
        enrollment = await self.enrollments.get(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFound(enrollment_id)
        return enrollment

    async def find_open(self, sequence_id: str, job_application_id: str) -> Enrollment | None:
        return await self.enrollments.find_open(sequence_id, job_application_id)

    async def create(
        self,
        sequence_id: str,
        job_application_id: str,
        trigger: EnrollmentTrigger = EnrollmentTrigger.MANUAL,
        metadata: dict[str, Any] | None = None,
        *,
        sequence: SequenceDefinition | None = None,
        application: JobApplication | None = None,
    ) -> Enrollment:
        """
        Enroll one job application into a sequence.

        ``sequence`` and ``application`` may be passed in when the caller
        already loaded them (bulk enrollment, trigger evaluation).

        Raises:
            SequenceNotFound: unknown sequence
            InvalidSequence: sequence has no steps or belongs to another job
            ApplicationNotFound: unknown job application
            DuplicateEnrollment: an active or paused enrollment already exists
        """
        if sequence is None:
            sequence = await self.sequences.get_sequence(sequence_id)
        if sequence.step_count == 0:
            raise InvalidSequence(f"Sequence {sequence_id} has no steps", sequence_id=sequence_id)

        if application is None:
            application = await self.pipeline.get_application(job_application_id)
        if application is None:
            raise ApplicationNotFound(job_application_id)

        if sequence.job_id and application.job_id != sequence.job_id:
            raise InvalidSequence(
                f"Sequence {sequence_id} belongs to job {sequence.job_id}, "
                f"application {job_application_id} to job {application.job_id}",
                sequence_id=sequence_id,
                job_application_id=job_application_id,
            )

        # Fast path only; the partial unique index is what actually guarantees it
        existing = await self.enrollments.find_open(sequence_id, job_application_id)
        if existing:
            logger.warning(
                "Duplicate enrollment rejected",
                sequence_id=sequence_id,
                job_application_id=job_application_id,
                existing_id=existing.id,
            )
            raise DuplicateEnrollment(sequence_id, job_application_id, existing_id=existing.id)

        now = self.clock()
        candidate = state_machine.start(
            sequence,
            job_application_id,
            trigger,
            now,
            job_id=application.job_id,
            metadata=metadata,
        )
        try:
            enrollment = await self.enrollments.insert(candidate)
        except DuplicateEnrollment as e:
            logger.warning(
                "Duplicate enrollment rejected",
                sequence_id=sequence_id,
                job_application_id=job_application_id,
                existing_id=e.existing_id,
            )
            raise

        await self.audit.log_transition(
            enrollment_id=enrollment.id,
            action="create",
            from_status=None,
            to_status=enrollment.status,
            details={"trigger": trigger.value},
        )
        logger.info(
            "Enrollment created",
            enrollment_id=enrollment.id,
            sequence_id=sequence_id,
            job_application_id=job_application_id,
            trigger=trigger.value,
        )
        return enrollment

    async def pause(self, enrollment_id: str) -> Enrollment:
        async def transition(current: Enrollment, now: datetime) -> Enrollment:
            return state_machine.pause(current, now)

        return await self._mutate(enrollment_id, "pause", transition)

    async def resume(self, enrollment_id: str) -> Enrollment:
        async def transition(current: Enrollment, now: datetime) -> Enrollment:
            state_machine.require_allowed(current, "resume")
            sequence = await self.sequences.get_sequence(current.sequence_id)
            next_at = sequence.next_execution_at(current.current_step_order, now)
            return state_machine.resume(current, now, next_at)

        return await self._mutate(enrollment_id, "resume", transition)

    async def advance(
        self,
        enrollment_id: str,
        next_step_order: int,
        next_step_id: str | None = None,
        next_execution_at: datetime | None = None,
        execution_entry: dict[str, Any] | None = None,
    ) -> Enrollment:
        """
        Record a step execution reported by the send-scheduler.

        Missing ``next_step_id``/``next_execution_at`` are filled in from the
        sequence definition. Advancing to an order at or past the step count
        completes the enrollment.
        """

        async def transition(current: Enrollment, now: datetime) -> Enrollment:
            return await self._advanced(
                current, now, next_step_order, next_step_id, next_execution_at, execution_entry
            )

        return await self._mutate(
            enrollment_id, "advance", transition, details={"nextStepOrder": next_step_order}
        )

    async def mark_failed(self, enrollment_id: str, reason: str) -> Enrollment:
        async def transition(current: Enrollment, now: datetime) -> Enrollment:
            return state_machine.fail(current, now, reason)

        return await self._mutate(enrollment_id, "fail", transition, details={"reason": reason})

    async def update(
        self,
        enrollment_id: str,
        *,
        metadata: dict[str, Any] | None = None,
        next_step_order: int | None = None,
        next_step_id: str | None = None,
        next_execution_at: datetime | None = None,
    ) -> Enrollment:
        """
        Apply a partial update: metadata merge and/or step advance.

        Both changes are written by one versioned save, so a rejected
        advance leaves the metadata untouched as well.

        Raises:
            InvalidUpdate: step id or execution time given without a step order
        """
        if next_step_order is None and (next_step_id or next_execution_at):
            raise InvalidUpdate(
                "currentStepId and nextExecutionAt require currentStepOrder",
                enrollment_id=enrollment_id,
            )
        if not metadata and next_step_order is None:
            return await self.get(enrollment_id)

        async def transition(current: Enrollment, now: datetime) -> Enrollment:
            updated = state_machine.merge_metadata(current, now, metadata) if metadata else current
            if next_step_order is None:
                return updated
            return await self._advanced(
                updated, now, next_step_order, next_step_id, next_execution_at
            )

        if next_step_order is None:
            return await self._mutate(enrollment_id, "update_metadata", transition)
        return await self._mutate(
            enrollment_id,
            "advance",
            transition,
            details={"nextStepOrder": next_step_order, "metadataUpdated": bool(metadata)},
        )

    async def _advanced(
        self,
        current: Enrollment,
        now: datetime,
        next_step_order: int,
        next_step_id: str | None,
        next_execution_at: datetime | None,
        execution_entry: dict[str, Any] | None = None,
    ) -> Enrollment:
        state_machine.require_allowed(current, "advance")
        sequence = await self.sequences.get_sequence(current.sequence_id)
        step = sequence.step_at(next_step_order)
        return state_machine.advance(
            current,
            now,
            next_step_id=next_step_id or (step.id if step else None),
            next_step_order=next_step_order,
            next_execution_at=next_execution_at or sequence.next_execution_at(next_step_order, now),
            step_count=sequence.step_count,
            execution_entry=execution_entry,
        )

    async def remove(self, enrollment_id: str) -> Enrollment:
        """
        Remove an enrollment from its sequence. Idempotent.

        Open enrollments are unsubscribed and tombstoned; terminal ones are
        only tombstoned. Removing an already removed enrollment returns it
        unchanged.
        """

        async def transition(current: Enrollment, now: datetime) -> Enrollment | None:
            if current.is_removed:
                return None
            if current.is_open:
                return state_machine.unsubscribe(current, now, "removed", tombstone=True)
            return state_machine.tombstone(current, now)

        return await self._mutate_idempotent(enrollment_id, "remove", transition)

    async def unsubscribe(self, enrollment_id: str, reason: str) -> Enrollment:
        """Stop an open enrollment; a no-op on one that is already terminal."""

        async def transition(current: Enrollment, now: datetime) -> Enrollment | None:
            if not current.is_open:
                return None
            return state_machine.unsubscribe(current, now, reason)

        return await self._mutate_idempotent(
            enrollment_id, "unsubscribe", transition, details={"reason": reason}
        )

    async def _mutate(
        self,
        enrollment_id: str,
        action: str,
        transition: Transition,
        details: dict[str, Any] | None = None,
    ) -> Enrollment:
        current = await self.get(enrollment_id)
        try:
            updated = await transition(current, self.clock())
        except InvalidTransition:
            logger.warning(
                "Enrollment transition rejected",
                enrollment_id=enrollment_id,
                action=action,
                status=current.status.value,
            )
            raise
        return await self._save(current, updated, action, details)

    async def _mutate_idempotent(
        self,
        enrollment_id: str,
        action: str,
        transition: Callable[[Enrollment, datetime], Awaitable[Enrollment | None]],
        details: dict[str, Any] | None = None,
    ) -> Enrollment:
        """
        Like _mutate, but a lost version race reloads and re-evaluates.

        ``transition`` returns None when the enrollment is already in the
        desired state.
        """
        for attempt in range(1, IDEMPOTENT_RETRIES + 1):
            current = await self.get(enrollment_id)
            updated = await transition(current, self.clock())
            if updated is None:
                logger.info(
                    "Enrollment already in requested state",
                    enrollment_id=enrollment_id,
                    action=action,
                    status=current.status.value,
                )
                return current
            try:
                return await self._save(current, updated, action, details)
            except EnrollmentConflict:
                if attempt >= IDEMPOTENT_RETRIES:
                    raise
                logger.info(
                    "Retrying enrollment mutation after concurrent write",
                    enrollment_id=enrollment_id,
                    action=action,
                    attempt=attempt,
                )
        raise RuntimeError("Idempotent mutation loop exhausted")

    async def _save(
        self,
        current: Enrollment,
        updated: Enrollment,
        action: str,
        details: dict[str, Any] | None,
    ) -> Enrollment:
        saved = await self.enrollments.save(updated, expected_version=current.version)
        await self.audit.log_transition(
            enrollment_id=saved.id,
            action=action,
            from_status=current.status,
            to_status=saved.status,
            details=details,
        )
        logger.info(
            "Enrollment transitioned",
            enrollment_id=saved.id,
            action=action,
            from_status=current.status.value,
            to_status=saved.status.value,
            version=saved.version,
        )
        return saved
