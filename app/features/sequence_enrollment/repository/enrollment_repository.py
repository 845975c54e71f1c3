"""
Persistence layer for sequence enrollments.

The at-most-one-open-enrollment rule is enforced by the partial unique index
``uq_sequence_enrollments_open``; every mutation after creation is an
optimistic ``UPDATE ... WHERE version = %s`` so concurrent writers on the
same row never silently overwrite each other.
"""

import uuid
from typing import Any

from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, fetch_all, fetch_one, fetch_val, with_db_retry
from app.features.sequence_enrollment.domain import (
    DuplicateEnrollment,
    Enrollment,
    EnrollmentConflict,
    EnrollmentFilters,
    EnrollmentNotFound,
    EnrollmentStatus,
    EnrollmentTrigger,
    PageRequest,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# API sort keys -> columns. Anything else is rejected before reaching SQL.
SORT_COLUMNS = {
    "enrolledAt": "enrolled_at",
    "updatedAt": "updated_at",
    "status": "status",
    "currentStepOrder": "current_step_order",
    "nextExecutionAt": "next_execution_at",
    "completedAt": "completed_at",
}


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class EnrollmentRepository:
    """SQL access for the sequence_enrollments table."""

    SELECT_COLUMNS = """
        id, sequence_id, job_application_id, job_id, status, enrollment_trigger,
        current_step_id, current_step_order, total_steps_completed,
        next_execution_at, last_executed_at, completed_at, paused_at, removed_at,
        enrolled_at, updated_at, metadata, execution_log, version
    """

    @classmethod
    def _row_to_enrollment(cls, row: dict | None) -> Enrollment | None:
        if not row:
            return None

        return Enrollment(
            id=str(row["id"]),
            sequence_id=row["sequence_id"],
            job_application_id=row["job_application_id"],
            job_id=row.get("job_id"),
            status=EnrollmentStatus(row["status"]),
            enrollment_trigger=EnrollmentTrigger(row["enrollment_trigger"]),
            current_step_id=row.get("current_step_id"),
            current_step_order=row["current_step_order"],
            total_steps_completed=row.get("total_steps_completed") or 0,
            next_execution_at=row.get("next_execution_at"),
            last_executed_at=row.get("last_executed_at"),
            completed_at=row.get("completed_at"),
            paused_at=row.get("paused_at"),
            removed_at=row.get("removed_at"),
            enrolled_at=row["enrolled_at"],
            updated_at=row["updated_at"],
            metadata=row.get("metadata") or {},
            execution_log=row.get("execution_log") or [],
            version=row["version"],
        )

    @classmethod
    async def insert(cls, enrollment: Enrollment) -> Enrollment:
        """
        Insert a new open enrollment.

        Raises:
            DuplicateEnrollment: an active/paused enrollment already exists for the pair
        """
        query = f"""
            INSERT INTO sequence_enrollments (
                id, sequence_id, job_application_id, job_id, status, enrollment_trigger,
                current_step_id, current_step_order, total_steps_completed,
                next_execution_at, enrolled_at, updated_at, metadata, execution_log, version
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 1)
            ON CONFLICT (sequence_id, job_application_id)
                WHERE status IN ('active', 'paused')
                DO NOTHING
            RETURNING {cls.SELECT_COLUMNS}
        """
        params = (
            enrollment.id,
            enrollment.sequence_id,
            enrollment.job_application_id,
            enrollment.job_id,
            enrollment.status.value,
            enrollment.enrollment_trigger.value,
            enrollment.current_step_id,
            enrollment.current_step_order,
            enrollment.total_steps_completed,
            enrollment.next_execution_at,
            enrollment.enrolled_at,
            enrollment.updated_at,
            Jsonb(enrollment.metadata),
            Jsonb(enrollment.execution_log),
        )

        try:
            row = await fetch_one(query, params)
        except DatabaseError as e:
            if e.is_unique_violation:
                row = None
            else:
                raise

        if not row:
            existing = await cls.find_open(enrollment.sequence_id, enrollment.job_application_id)
            raise DuplicateEnrollment(
                enrollment.sequence_id,
                enrollment.job_application_id,
                existing_id=existing.id if existing else None,
            )

        return cls._row_to_enrollment(row)

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.05)
    async def get(cls, enrollment_id: str) -> Enrollment | None:
        if not _is_uuid(enrollment_id):
            return None
        query = f"SELECT {cls.SELECT_COLUMNS} FROM sequence_enrollments WHERE id = %s"
        row = await fetch_one(query, (enrollment_id,))
        return cls._row_to_enrollment(row)

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.05)
    async def find_open(cls, sequence_id: str, job_application_id: str) -> Enrollment | None:
        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM sequence_enrollments
            WHERE sequence_id = %s
              AND job_application_id = %s
              AND status IN ('active', 'paused')
        """
        row = await fetch_one(query, (sequence_id, job_application_id))
        return cls._row_to_enrollment(row)

    @classmethod
    async def save(cls, enrollment: Enrollment, expected_version: int) -> Enrollment:
        """
        Persist a transitioned enrollment if nobody else wrote it since it was read.

        Raises:
            EnrollmentNotFound: the row no longer exists
            EnrollmentConflict: the row's version moved on
        """
        query = f"""
            UPDATE sequence_enrollments
            SET status = %s,
                current_step_id = %s,
                current_step_order = %s,
                total_steps_completed = %s,
                next_execution_at = %s,
                last_executed_at = %s,
                completed_at = %s,
                paused_at = %s,
                removed_at = %s,
                metadata = %s,
                execution_log = %s,
                updated_at = %s,
                version = version + 1
            WHERE id = %s
              AND version = %s
            RETURNING {cls.SELECT_COLUMNS}
        """
        params = (
            enrollment.status.value,
            enrollment.current_step_id,
            enrollment.current_step_order,
            enrollment.total_steps_completed,
            enrollment.next_execution_at,
            enrollment.last_executed_at,
            enrollment.completed_at,
            enrollment.paused_at,
            enrollment.removed_at,
            Jsonb(enrollment.metadata),
            Jsonb(enrollment.execution_log),
            enrollment.updated_at,
            enrollment.id,
            expected_version,
        )

        row = await fetch_one(query, params)
        if row:
            return cls._row_to_enrollment(row)

        current_version = await fetch_val(
            "SELECT version FROM sequence_enrollments WHERE id = %s", (enrollment.id,)
        )
        if current_version is None:
            raise EnrollmentNotFound(enrollment.id)

        logger.warning(
            "Enrollment version check failed",
            enrollment_id=enrollment.id,
            expected_version=expected_version,
            current_version=current_version,
        )
        raise EnrollmentConflict(enrollment.id, expected_version)

    @classmethod
    def _filter_clause(cls, filters: EnrollmentFilters) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []

        if filters.sequence_id:
            clauses.append("sequence_id = %s")
            params.append(filters.sequence_id)
        if filters.job_id:
            clauses.append("job_id = %s")
            params.append(filters.job_id)
        if filters.status:
            clauses.append("status = %s")
            params.append(filters.status.value)
        if filters.enrollment_trigger:
            clauses.append("enrollment_trigger = %s")
            params.append(filters.enrollment_trigger.value)
        if not filters.include_removed:
            clauses.append("removed_at IS NULL")

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.05)
    async def list_page(
        cls, filters: EnrollmentFilters, page: PageRequest
    ) -> tuple[list[Enrollment], int]:
        """Return one page of enrollments plus the total matching count."""
        where, params = cls._filter_clause(filters)
        column = SORT_COLUMNS[page.sort_by]
        direction = "ASC" if page.sort_order.lower() == "asc" else "DESC"

        total = await fetch_val(f"SELECT COUNT(*) FROM sequence_enrollments {where}", tuple(params))

        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM sequence_enrollments
            {where}
            ORDER BY {column} {direction} NULLS LAST, id {direction}
            LIMIT %s OFFSET %s
        """
        rows = await fetch_all(query, tuple(params + [page.limit, page.offset]))
        return [cls._row_to_enrollment(row) for row in rows], int(total or 0)

    @classmethod
    @with_db_retry(max_retries=2, base_delay=0.05)
    async def count_by_status(cls, sequence_id: str) -> dict[str, int]:
        query = """
            SELECT status, COUNT(*) AS count
            FROM sequence_enrollments
            WHERE sequence_id = %s
              AND removed_at IS NULL
            GROUP BY status
        """
        rows = await fetch_all(query, (sequence_id,))
        return {row["status"]: int(row["count"]) for row in rows}
