"""
Shared HTTP plumbing for collaborator services (sequence definitions,
recruitment pipeline).
"""

import asyncio
from typing import Any

import httpx

from app.config import settings
from app.features.sequence_enrollment.domain import CollaboratorError
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_RETRIES = 3
BACKOFF_FACTOR = 0.25
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class CollaboratorClient:
    """Async JSON client with retry and backoff for transient failures."""

    service_name = "collaborator"

    def __init__(self, base_url: str, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self._client = self._create_client(transport)

    def _create_client(self, transport: httpx.AsyncBaseTransport | None) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if settings.SERVICE_API_TOKEN:
            headers["Authorization"] = f"Bearer {settings.SERVICE_API_TOKEN}"

        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(settings.COLLABORATOR_TIMEOUT_S),
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=50),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request_with_retry(self, method: str, path: str, **kwargs) -> httpx.Response:
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, path, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.debug(
                        "Collaborator request retrying",
                        service=self.service_name,
                        path=path,
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    logger.error(
                        "Collaborator request failed",
                        service=self.service_name,
                        path=path,
                        error=str(e),
                    )
                    raise CollaboratorError(
                        f"{self.service_name} unreachable: {e}", service=self.service_name
                    ) from e
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug(
                    "Collaborator request error, retrying",
                    service=self.service_name,
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise RuntimeError("Collaborator retry loop exhausted")

    async def _get_json(self, path: str, params: dict | None = None) -> Any | None:
        """GET a JSON document; None on 404, CollaboratorError on any other failure."""
        response = await self._request_with_retry("GET", path, params=params)

        if response.status_code == 404:
            return None

        if response.status_code >= 400:
            logger.warning(
                "Collaborator returned error",
                service=self.service_name,
                path=path,
                status_code=response.status_code,
            )
            raise CollaboratorError(
                f"{self.service_name} returned {response.status_code} for {path}",
                service=self.service_name,
                status_code=response.status_code,
                recoverable=response.status_code >= 500 or response.status_code == 429,
            )

        return response.json()
