"""
Read side for the presentation layer: filtered, paginated listings,
per-sequence status counts and the transition trail of one enrollment.
"""

from app.config import settings
from app.features.sequence_enrollment.domain import (
    Enrollment,
    EnrollmentEvent,
    EnrollmentFilters,
    EnrollmentNotFound,
    EnrollmentPage,
    EnrollmentStatus,
    InvalidQuery,
    PageRequest,
)
from app.features.sequence_enrollment.repository.enrollment_repository import (
    SORT_COLUMNS,
    EnrollmentRepository,
)
from app.infrastructure.audit import audit_logger


class EnrollmentQueryService:
    def __init__(
        self,
        enrollments=EnrollmentRepository,
        audit=audit_logger,
        default_limit: int | None = None,
        max_limit: int | None = None,
    ):
        self.enrollments = enrollments
        self.audit = audit
        self.default_limit = default_limit or settings.QUERY_DEFAULT_LIMIT
        self.max_limit = max_limit or settings.QUERY_MAX_LIMIT

    def build_page_request(
        self,
        page: int = 1,
        limit: int | None = None,
        sort_by: str | None = None,
        sort_order: str | None = None,
    ) -> PageRequest:
        limit = self.default_limit if limit is None else limit
        sort_by = sort_by or "enrolledAt"
        sort_order = (sort_order or "desc").lower()

        if page < 1:
            raise InvalidQuery("page must be >= 1", page=page)
        if not 1 <= limit <= self.max_limit:
            raise InvalidQuery(f"limit must be between 1 and {self.max_limit}", limit=limit)
        if sort_by not in SORT_COLUMNS:
            raise InvalidQuery(
                f"sortBy must be one of: {', '.join(SORT_COLUMNS)}", sort_by=sort_by
            )
        if sort_order not in ("asc", "desc"):
            raise InvalidQuery("sortOrder must be 'asc' or 'desc'", sort_order=sort_order)

        return PageRequest(page=page, limit=limit, sort_by=sort_by, sort_order=sort_order)

    async def list_enrollments(
        self, filters: EnrollmentFilters, page: PageRequest
    ) -> EnrollmentPage:
        items, total = await self.enrollments.list_page(filters, page)
        return EnrollmentPage(items=items, total=total, page=page.page, limit=page.limit)

    async def get(self, enrollment_id: str) -> Enrollment:
        enrollment = await self.enrollments.get(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFound(enrollment_id)
        return enrollment

    async def stats(self, sequence_id: str) -> dict[str, int]:
        """Counts per status for one sequence, tombstoned enrollments excluded."""
        counts = await self.enrollments.count_by_status(sequence_id)
        stats = {status.value: counts.get(status.value, 0) for status in EnrollmentStatus}
        stats["total"] = sum(stats.values())
        return stats

    async def events(self, enrollment_id: str) -> list[EnrollmentEvent]:
        await self.get(enrollment_id)
        return await self.audit.list_events(enrollment_id)
