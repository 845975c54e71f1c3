"""
EnrollmentAuditLogger - transition history for sequence enrollments.

Every state change of an enrollment is written to:
1. Database (sequence_enrollment_events table) - append-only, queryable
2. Structured logs (stdout) - real-time monitoring

Usage:
    from app.infrastructure.audit import audit_logger

    await audit_logger.log_transition(
        enrollment_id=enrollment.id,
        action="pause",
        from_status="active",
        to_status="paused",
    )

Design Principles:
- Never fail the request if audit logging fails
- Correlate with the request via the request_id bound to the log context
"""

from datetime import UTC, datetime
from typing import Any

import structlog
from psycopg.types.json import Jsonb

from app.db.helpers import execute_query, fetch_all
from app.features.sequence_enrollment.domain.models import EnrollmentEvent, EnrollmentStatus
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EnrollmentAuditLogger:
    """Writes and reads the per-enrollment transition trail."""

    @staticmethod
    async def log_transition(
        enrollment_id: str,
        action: str,
        from_status: EnrollmentStatus | str | None,
        to_status: EnrollmentStatus | str,
        details: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> bool:
        """
        Record one transition.

        Returns:
            True if stored, False if the database write failed (never raises)
        """
        from_value = getattr(from_status, "value", from_status)
        to_value = getattr(to_status, "value", to_status)
        request_id = request_id or structlog.contextvars.get_contextvars().get("request_id")

        logger.info(
            "Enrollment audit event",
            audit_action=action,
            enrollment_id=enrollment_id,
            from_status=from_value,
            to_status=to_value,
        )

        try:
            await execute_query(
                """
                INSERT INTO sequence_enrollment_events (
                    enrollment_id, action, from_status, to_status, request_id, details, created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    enrollment_id,
                    action,
                    from_value,
                    to_value,
                    request_id,
                    Jsonb(details or {}),
                    datetime.now(UTC),
                ),
            )
            return True

        except Exception as e:
            # Keep enough context to rebuild the row by hand
            logger.error(
                "Failed to write enrollment audit event",
                error=str(e),
                error_type=type(e).__name__,
                fallback_data={
                    "enrollment_id": enrollment_id,
                    "action": action,
                    "from_status": from_value,
                    "to_status": to_value,
                    "request_id": request_id,
                },
            )
            return False

    @staticmethod
    async def list_events(enrollment_id: str) -> list[EnrollmentEvent]:
        rows = await fetch_all(
            """
            SELECT enrollment_id, action, from_status, to_status, request_id, details, created_at
            FROM sequence_enrollment_events
            WHERE enrollment_id = %s
            ORDER BY created_at, id
            """,
            (enrollment_id,),
        )
        return [
            EnrollmentEvent(
                enrollment_id=str(row["enrollment_id"]),
                action=row["action"],
                from_status=EnrollmentStatus(row["from_status"]) if row["from_status"] else None,
                to_status=EnrollmentStatus(row["to_status"]),
                created_at=row["created_at"],
                request_id=row.get("request_id"),
                details=row.get("details") or {},
            )
            for row in rows
        ]


audit_logger = EnrollmentAuditLogger()
