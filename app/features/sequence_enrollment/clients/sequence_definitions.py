"""
Client for the email/outreach sequence definition service.

Only the ordered step list and the owning job are needed here: they decide
when an enrollment's next step is due and which job's applications a
sequence may auto-enroll.
"""

from app.config import settings
from app.features.sequence_enrollment.domain import (
    SequenceDefinition,
    SequenceNotFound,
    SequenceStep,
)

from .base import CollaboratorClient


class SequenceDefinitionClient(CollaboratorClient):
    service_name = "sequence_definitions"

    def __init__(self, base_url: str | None = None, **kwargs):
        super().__init__(base_url or settings.SEQUENCE_SERVICE_URL, **kwargs)

    async def get_sequence(self, sequence_id: str) -> SequenceDefinition:
        """
        Fetch a sequence with its steps sorted by order.

        Raises:
            SequenceNotFound: unknown sequence
            CollaboratorError: service failure
        """
        data = await self._get_json(f"/sequences/{sequence_id}")
        if data is None:
            raise SequenceNotFound(sequence_id)

        steps = [
            SequenceStep(
                id=str(step["id"]),
                order=int(step.get("order", index)),
                delay_minutes=int(step.get("delayMinutes") or 0),
            )
            for index, step in enumerate(data.get("steps") or [])
        ]
        steps.sort(key=lambda step: step.order)

        return SequenceDefinition(
            id=str(data.get("id", sequence_id)),
            job_id=data.get("jobId"),
            steps=steps,
        )
