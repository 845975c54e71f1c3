"""
Bulk enrollment orchestrator.

Enrolls a list of job applications into one sequence. Each item is
independent: it is created, skipped (already enrolled) or reported as an
itemized failure, and never aborts its siblings. Items run on a bounded
worker pool; transient storage and collaborator errors are retried per item.
"""

import asyncio
from typing import Any

from app.config import settings
from app.db.helpers import DatabaseError
from app.features.sequence_enrollment.domain import (
    BulkEnrollmentResult,
    BulkFailure,
    CollaboratorError,
    DuplicateEnrollment,
    Enrollment,
    EnrollmentError,
    EnrollmentTrigger,
    InvalidBulkRequest,
    InvalidSequence,
    JobApplication,
    SequenceDefinition,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

CREATED = "created"
SKIPPED = "skipped"
FAILED = "failed"

CANCELLED_REASON = "cancelled: bulk enrollment timed out before this item finished"


class BulkEnrollmentOrchestrator:
    def __init__(
        self,
        lifecycle,
        sequences,
        *,
        max_concurrency: int | None = None,
        max_items: int | None = None,
        max_retries: int | None = None,
        retry_base_delay: float | None = None,
        timeout_s: float | None = None,
    ):
        config = settings.get_bulk_config()
        self.lifecycle = lifecycle
        self.sequences = sequences
        self.max_concurrency = max_concurrency or config["max_concurrency"]
        self.max_items = max_items or config["max_items"]
        self.max_retries = config["max_retries"] if max_retries is None else max_retries
        self.retry_base_delay = (
            config["retry_base_delay"] if retry_base_delay is None else retry_base_delay
        )
        self.timeout_s = timeout_s or config["timeout_s"]

    async def enroll(
        self,
        sequence_id: str,
        job_application_ids: list[str],
        trigger: EnrollmentTrigger = EnrollmentTrigger.MANUAL,
        metadata: dict[str, Any] | None = None,
        *,
        applications: dict[str, JobApplication] | None = None,
    ) -> BulkEnrollmentResult:
        """
        Enroll every application, reporting per-item results in input order.

        ``applications`` lets a caller that already fetched the pipeline
        records (the retroactive sweep) skip the per-item lookup.

        Raises:
            InvalidBulkRequest: empty or oversized request
            SequenceNotFound / InvalidSequence: the whole call cannot proceed
        """
        if not job_application_ids:
            raise InvalidBulkRequest("jobApplicationIds must not be empty")
        if len(job_application_ids) > self.max_items:
            raise InvalidBulkRequest(
                f"At most {self.max_items} job applications per bulk request",
                requested=len(job_application_ids),
            )

        sequence = await self.sequences.get_sequence(sequence_id)
        if sequence.step_count == 0:
            raise InvalidSequence(f"Sequence {sequence_id} has no steps", sequence_id=sequence_id)

        unique_ids = list(dict.fromkeys(job_application_ids))
        applications = applications or {}

        log = logger.bind(sequence_id=sequence_id, trigger=trigger.value)
        log.info(
            "Bulk enrollment started",
            requested=len(job_application_ids),
            unique=len(unique_ids),
            max_concurrency=self.max_concurrency,
        )

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(job_application_id: str) -> tuple[str, Any]:
            async with semaphore:
                return await self._enroll_one(
                    sequence,
                    job_application_id,
                    trigger,
                    metadata,
                    applications.get(job_application_id),
                )

        tasks = {app_id: asyncio.create_task(run(app_id)) for app_id in unique_ids}
        try:
            _, pending = await asyncio.wait(tasks.values(), timeout=self.timeout_s)
        except asyncio.CancelledError:
            for task in tasks.values():
                task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)
            log.warning("Bulk enrollment cancelled by caller", unique=len(unique_ids))
            raise

        if pending:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            log.warning(
                "Bulk enrollment timed out",
                timeout_s=self.timeout_s,
                unfinished=len(pending),
            )

        result = BulkEnrollmentResult()
        reported: set[str] = set()
        for job_application_id in job_application_ids:
            if job_application_id in reported:
                result.skipped.append(job_application_id)
                continue
            reported.add(job_application_id)

            task = tasks[job_application_id]
            if task.cancelled():
                result.failed.append(BulkFailure(job_application_id, CANCELLED_REASON))
                continue

            status, value = task.result()
            if status == CREATED:
                result.created.append(value)
            elif status == SKIPPED:
                result.skipped.append(job_application_id)
            else:
                result.failed.append(BulkFailure(job_application_id, value))

        log.info(
            "Bulk enrollment finished",
            created=len(result.created),
            skipped=len(result.skipped),
            failed=len(result.failed),
        )
        return result

    async def _enroll_one(
        self,
        sequence: SequenceDefinition,
        job_application_id: str,
        trigger: EnrollmentTrigger,
        metadata: dict[str, Any] | None,
        application: JobApplication | None,
    ) -> tuple[str, Enrollment | str | None]:
        attempt = 0
        while True:
            try:
                enrollment = await self.lifecycle.create(
                    sequence.id,
                    job_application_id,
                    trigger,
                    metadata,
                    sequence=sequence,
                    application=application,
                )
                return CREATED, enrollment
            except DuplicateEnrollment:
                return SKIPPED, None
            except (DatabaseError, CollaboratorError) as e:
                if e.recoverable and attempt < self.max_retries:
                    delay = self.retry_base_delay * (2**attempt)
                    attempt += 1
                    logger.warning(
                        "Bulk enrollment item retrying",
                        sequence_id=sequence.id,
                        job_application_id=job_application_id,
                        attempt=attempt,
                        delay_seconds=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)
                    continue
                return FAILED, str(e)
            except EnrollmentError as e:
                return FAILED, e.message
            except Exception as e:
                logger.error(
                    "Bulk enrollment item failed unexpectedly",
                    sequence_id=sequence.id,
                    job_application_id=job_application_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                return FAILED, f"internal error: {type(e).__name__}"
