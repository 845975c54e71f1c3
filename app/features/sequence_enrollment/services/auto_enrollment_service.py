"""
Auto-enrollment configuration service.

Config writes for a sequence are serialized with a short-lived Redis lock.
The lock is held while the retroactive sweep (includeExistingCandidates)
runs and refreshed in the background until the sweep ends, so a second
write during a sweep waits for it with backoff and gives up with
ConfigConflict if the sweep outlasts the retry budget.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass

from app.config import settings
from app.features.sequence_enrollment.domain import (
    AutoEnrollmentConfig,
    AutoEnrollmentConfigNotFound,
    BulkEnrollmentResult,
    ConfigConflict,
    EnrollmentTrigger,
    InvalidAutoEnrollmentConfig,
    LedgerDecision,
)
from app.features.sequence_enrollment.repository.auto_enrollment_repository import (
    AutoEnrollmentConfigRepository,
    AutoEnrollmentLedgerRepository,
)
from app.infrastructure.observability.logging import get_logger
from app.services.redis_client import fast_redis

logger = get_logger(__name__)

LOCK_KEY_PREFIX = "sequence_enrollment:auto_config_lock"


@dataclass(slots=True)
class ConfigUpdateResult:
    config: AutoEnrollmentConfig
    sweep: BulkEnrollmentResult | None = None


def _unique(stage_ids: list[str]) -> list[str]:
    return list(dict.fromkeys(stage for stage in stage_ids if stage))


class AutoEnrollmentService:
    def __init__(
        self,
        sequences,
        pipeline,
        bulk,
        configs=AutoEnrollmentConfigRepository,
        ledger=AutoEnrollmentLedgerRepository,
        redis=fast_redis,
        lock_ttl_s: int | None = None,
        lock_max_retries: int | None = None,
        lock_base_delay: float | None = None,
        lock_refresh_s: float | None = None,
    ):
        self.sequences = sequences
        self.pipeline = pipeline
        self.bulk = bulk
        self.configs = configs
        self.ledger = ledger
        self.redis = redis
        self.lock_ttl_s = lock_ttl_s or settings.SWEEP_LOCK_TTL_S
        self.lock_max_retries = (
            settings.CONFIG_LOCK_MAX_RETRIES if lock_max_retries is None else lock_max_retries
        )
        self.lock_base_delay = (
            settings.CONFIG_LOCK_BASE_DELAY_S if lock_base_delay is None else lock_base_delay
        )
        # Extend at a third of the TTL during a sweep
        self.lock_refresh_s = lock_refresh_s or self.lock_ttl_s / 3

    async def get_config(self, sequence_id: str) -> AutoEnrollmentConfig:
        config = await self.configs.get(sequence_id)
        if config is None:
            raise AutoEnrollmentConfigNotFound(sequence_id)
        return config

    async def set_config(
        self,
        sequence_id: str,
        *,
        auto_enroll_enabled: bool,
        trigger_stages: list[str],
        exclude_stages: list[str],
        include_existing_candidates: bool = False,
    ) -> ConfigUpdateResult:
        """
        Validate and store a sequence's config.

        When the config goes from disabled (or absent) to enabled with
        ``include_existing_candidates``, applications already sitting in a
        trigger stage are enrolled before the lock is released.

        Raises:
            InvalidAutoEnrollmentConfig: overlapping or empty stage lists
            SequenceNotFound: unknown sequence
            ConfigConflict: another write or sweep holds the lock
        """
        config = AutoEnrollmentConfig(
            sequence_id=sequence_id,
            auto_enroll_enabled=auto_enroll_enabled,
            trigger_stages=_unique(trigger_stages),
            exclude_stages=_unique(exclude_stages),
            include_existing_candidates=include_existing_candidates,
        )

        overlap = config.overlapping_stages()
        if overlap:
            raise InvalidAutoEnrollmentConfig(
                "Stages cannot be both trigger and exclude stages: "
                + ", ".join(sorted(overlap)),
                sequence_id=sequence_id,
                stages=sorted(overlap),
            )
        if config.auto_enroll_enabled and not config.trigger_stages:
            raise InvalidAutoEnrollmentConfig(
                "Auto-enrollment requires at least one trigger stage", sequence_id=sequence_id
            )

        sequence = await self.sequences.get_sequence(sequence_id)
        if config.auto_enroll_enabled and not sequence.job_id:
            raise InvalidAutoEnrollmentConfig(
                f"Sequence {sequence_id} is not scoped to a job", sequence_id=sequence_id
            )
        config.job_id = sequence.job_id

        lock_key = f"{LOCK_KEY_PREFIX}:{sequence_id}"
        token = str(uuid.uuid4())
        await self._acquire(lock_key, token, sequence_id)
        try:
            previous = await self.configs.get(sequence_id)
            stored = await self.configs.upsert(config)

            newly_enabled = stored.auto_enroll_enabled and not (
                previous and previous.auto_enroll_enabled
            )
            sweep = None
            if newly_enabled and stored.include_existing_candidates:
                async with self._held(lock_key, token, sequence_id):
                    sweep = await self._sweep(stored)

            logger.info(
                "Auto-enrollment config updated",
                sequence_id=sequence_id,
                enabled=stored.auto_enroll_enabled,
                trigger_stages=stored.trigger_stages,
                exclude_stages=stored.exclude_stages,
                swept=sweep is not None,
            )
            return ConfigUpdateResult(config=stored, sweep=sweep)
        finally:
            await self.redis.release_lock(lock_key, token)

    async def _acquire(self, lock_key: str, token: str, sequence_id: str) -> None:
        for attempt in range(self.lock_max_retries + 1):
            if await self.redis.acquire_lock(lock_key, token, self.lock_ttl_s):
                return
            if attempt < self.lock_max_retries:
                delay = self.lock_base_delay * (2**attempt)
                logger.info(
                    "Auto-enrollment config locked, retrying",
                    sequence_id=sequence_id,
                    attempt=attempt + 1,
                    delay_seconds=delay,
                )
                await asyncio.sleep(delay)

        logger.warning(
            "Auto-enrollment config lock not acquired",
            sequence_id=sequence_id,
            attempts=self.lock_max_retries + 1,
        )
        raise ConfigConflict(sequence_id)

    @asynccontextmanager
    async def _held(self, lock_key: str, token: str, sequence_id: str):
        """Keep extending the lock TTL while the block runs."""

        async def refresh() -> None:
            while True:
                await asyncio.sleep(self.lock_refresh_s)
                if not await self.redis.extend_lock(lock_key, token, self.lock_ttl_s):
                    logger.warning(
                        "Auto-enrollment config lock lost during sweep", sequence_id=sequence_id
                    )
                    return

        task = asyncio.create_task(refresh())
        try:
            yield
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _sweep(self, config: AutoEnrollmentConfig) -> BulkEnrollmentResult:
        """Enroll applications already sitting in a trigger stage."""
        applications = await self.pipeline.list_applications_in_stages(
            config.job_id, config.trigger_stages
        )

        eligible = {}
        for application in applications:
            if application.stage_id and config.is_exclude_stage(application.stage_id):
                continue
            if await self.ledger.has_exclusion(config.sequence_id, application.id):
                continue
            eligible[application.id] = application

        log = logger.bind(sequence_id=config.sequence_id, job_id=config.job_id)
        if not eligible:
            log.info("Retroactive sweep found no eligible applications", scanned=len(applications))
            return BulkEnrollmentResult()

        result = await self.bulk.enroll(
            config.sequence_id,
            list(eligible),
            EnrollmentTrigger.AUTOMATIC,
            {"source": "retroactive_sweep"},
            applications=eligible,
        )

        for enrollment in result.created:
            application = eligible[enrollment.job_application_id]
            await self._record(config, application, LedgerDecision.ENROLLED, enrollment.id)
        for job_application_id in result.skipped:
            application = eligible[job_application_id]
            await self._record(config, application, LedgerDecision.SKIPPED_EXISTING)

        log.info(
            "Retroactive sweep finished",
            scanned=len(applications),
            created=len(result.created),
            skipped=len(result.skipped),
            failed=len(result.failed),
        )
        return result

    async def _record(self, config, application, decision: LedgerDecision, enrollment_id=None):
        if not application.stage_id:
            return
        await self.ledger.record(
            config.sequence_id, application.id, application.stage_id, decision, enrollment_id
        )
