"""
Persistence for auto-enrollment configuration and the trigger decision ledger.
"""

from app.db.helpers import execute_query, fetch_all, fetch_one, with_db_retry
from app.features.sequence_enrollment.domain import AutoEnrollmentConfig, LedgerDecision
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class AutoEnrollmentConfigRepository:
    """One row per sequence in sequence_auto_enrollment_configs."""

    SELECT_COLUMNS = """
        sequence_id, job_id, auto_enroll_enabled, trigger_stages, exclude_stages,
        include_existing_candidates, updated_at
    """

    @classmethod
    def _row_to_config(cls, row: dict | None) -> AutoEnrollmentConfig | None:
        if not row:
            return None

        return AutoEnrollmentConfig(
            sequence_id=row["sequence_id"],
            job_id=row.get("job_id"),
            auto_enroll_enabled=row["auto_enroll_enabled"],
            trigger_stages=list(row.get("trigger_stages") or []),
            exclude_stages=list(row.get("exclude_stages") or []),
            include_existing_candidates=row["include_existing_candidates"],
            updated_at=row.get("updated_at"),
        )

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.05)
    async def get(cls, sequence_id: str) -> AutoEnrollmentConfig | None:
        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM sequence_auto_enrollment_configs
            WHERE sequence_id = %s
        """
        return cls._row_to_config(await fetch_one(query, (sequence_id,)))

    @classmethod
    async def upsert(cls, config: AutoEnrollmentConfig) -> AutoEnrollmentConfig:
        query = f"""
            INSERT INTO sequence_auto_enrollment_configs (
                sequence_id, job_id, auto_enroll_enabled, trigger_stages,
                exclude_stages, include_existing_candidates
            )
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (sequence_id) DO UPDATE
            SET job_id = EXCLUDED.job_id,
                auto_enroll_enabled = EXCLUDED.auto_enroll_enabled,
                trigger_stages = EXCLUDED.trigger_stages,
                exclude_stages = EXCLUDED.exclude_stages,
                include_existing_candidates = EXCLUDED.include_existing_candidates,
                updated_at = NOW()
            RETURNING {cls.SELECT_COLUMNS}
        """
        row = await fetch_one(
            query,
            (
                config.sequence_id,
                config.job_id,
                config.auto_enroll_enabled,
                list(config.trigger_stages),
                list(config.exclude_stages),
                config.include_existing_candidates,
            ),
        )
        logger.info(
            "Auto-enrollment config stored",
            sequence_id=config.sequence_id,
            enabled=config.auto_enroll_enabled,
        )
        return cls._row_to_config(row)

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.05)
    async def list_enabled_for_job(cls, job_id: str) -> list[AutoEnrollmentConfig]:
        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM sequence_auto_enrollment_configs
            WHERE job_id = %s
              AND auto_enroll_enabled
            ORDER BY sequence_id
        """
        rows = await fetch_all(query, (job_id,))
        return [cls._row_to_config(row) for row in rows]


class AutoEnrollmentLedgerRepository:
    """
    Records the latest trigger decision per (sequence, application, stage).

    Each row carries the dedup key of the stage-change event that produced
    it. A redelivered event matches the stored key and is dropped; a later
    move back into the stage has a new key and supersedes the row. An
    ``excluded`` row is never superseded and blocks later automatic
    enrollment of the pair.
    """

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.05)
    async def get_decision(
        cls,
        sequence_id: str,
        job_application_id: str,
        stage_id: str,
        event_key: str | None = None,
    ) -> LedgerDecision | None:
        """Return the recorded decision, only if it came from ``event_key`` when one is given."""
        query = """
            SELECT decision, event_key
            FROM sequence_auto_enrollment_ledger
            WHERE sequence_id = %s AND job_application_id = %s AND stage_id = %s
        """
        row = await fetch_one(query, (sequence_id, job_application_id, stage_id))
        if row is None:
            return None
        if event_key is not None and row["event_key"] != event_key:
            return None
        return LedgerDecision(row["decision"])

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.05)
    async def has_exclusion(cls, sequence_id: str, job_application_id: str) -> bool:
        query = """
            SELECT 1 AS excluded
            FROM sequence_auto_enrollment_ledger
            WHERE sequence_id = %s AND job_application_id = %s AND decision = 'excluded'
            LIMIT 1
        """
        return await fetch_one(query, (sequence_id, job_application_id)) is not None

    @classmethod
    async def record(
        cls,
        sequence_id: str,
        job_application_id: str,
        stage_id: str,
        decision: LedgerDecision,
        enrollment_id: str | None = None,
        event_key: str | None = None,
    ) -> bool:
        """Store the decision; returns False if the row was left unchanged."""
        query = """
            INSERT INTO sequence_auto_enrollment_ledger (
                sequence_id, job_application_id, stage_id, decision, enrollment_id, event_key
            )
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (sequence_id, job_application_id, stage_id) DO UPDATE
            SET decision = EXCLUDED.decision,
                enrollment_id = EXCLUDED.enrollment_id,
                event_key = EXCLUDED.event_key,
                recorded_at = NOW()
            WHERE sequence_auto_enrollment_ledger.decision <> 'excluded'
              AND sequence_auto_enrollment_ledger.event_key IS DISTINCT FROM EXCLUDED.event_key
        """
        written = await execute_query(
            query,
            (sequence_id, job_application_id, stage_id, decision.value, enrollment_id, event_key),
        )
        return written > 0
