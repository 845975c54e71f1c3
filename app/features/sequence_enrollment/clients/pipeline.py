"""
Client for the recruitment pipeline service (job applications and stages).
"""

from app.config import settings
from app.features.sequence_enrollment.domain import JobApplication

from .base import CollaboratorClient

PAGE_SIZE = 200


def _to_application(data: dict) -> JobApplication:
    return JobApplication(
        id=str(data["id"]),
        job_id=str(data["jobId"]),
        candidate_id=data.get("candidateId"),
        stage_id=data.get("stageId"),
    )


class PipelineClient(CollaboratorClient):
    service_name = "recruitment_pipeline"

    def __init__(self, base_url: str | None = None, **kwargs):
        super().__init__(base_url or settings.PIPELINE_SERVICE_URL, **kwargs)

    async def get_application(self, job_application_id: str) -> JobApplication | None:
        data = await self._get_json(f"/job-applications/{job_application_id}")
        return _to_application(data) if data else None

    async def list_applications_in_stages(
        self, job_id: str, stage_ids: list[str]
    ) -> list[JobApplication]:
        """All applications of ``job_id`` currently sitting in any of ``stage_ids``."""
        if not stage_ids:
            return []

        applications: list[JobApplication] = []
        page = 1
        while True:
            data = await self._get_json(
                f"/jobs/{job_id}/applications",
                params={"stageIds": ",".join(stage_ids), "page": page, "limit": PAGE_SIZE},
            )
            batch = (data or {}).get("data") or []
            applications.extend(_to_application(item) for item in batch)
            if len(batch) < PAGE_SIZE:
                break
            page += 1

        return applications
