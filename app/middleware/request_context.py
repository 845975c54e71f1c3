"""
RequestContext Middleware - Adds request tracking to all requests.

This middleware adds the following to every request:
- request_id: Unique ID for request tracing (honours an inbound X-Request-ID)
- ip_address: Client IP address
- user_agent: Client user agent string

These values are stored in request.state and the request_id is bound to
the structlog context so every log line of the request carries it.
Enrollment audit events pick the request_id up from that context.
"""

import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import settings
from app.infrastructure.observability.logging import (
    bind_request_context,
    clear_request_context,
    get_logger,
)

logger = get_logger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Add request context to all incoming requests.

    Adds to request.state:
    - request_id: UUID for tracing this request
    - ip_address: Client IP address
    - user_agent: Client user agent string

    Also adds X-Request-ID header to responses for client-side tracing.
    """

    async def dispatch(self, request: Request, call_next):
        """Process request and add context."""

        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id

        ip_address = self._extract_client_ip(request)
        request.state.ip_address = ip_address
        request.state.user_agent = request.headers.get("user-agent")

        clear_request_context()
        bind_request_context(request_id=request_id)

        logger.debug(
            "Request started",
            method=request.method,
            path=request.url.path,
            ip_address=ip_address,
        )

        try:
            response = await call_next(request)
        finally:
            clear_request_context()

        response.headers["X-Request-ID"] = request_id
        return response

    def _extract_client_ip(self, request: Request) -> str | None:
        """
        Extract client IP address with proxy spoofing protection.

        Only trusts X-Forwarded-For header if TRUST_X_FORWARDED_FOR is enabled
        and the request comes from a trusted proxy IP.
        """
        if not settings.TRUST_X_FORWARDED_FOR:
            return request.client.host if request.client else None

        if request.client and request.client.host in settings.TRUSTED_PROXY_IPS:
            forwarded_for = request.headers.get("x-forwarded-for")
            if forwarded_for:
                # X-Forwarded-For format: "client, proxy1, proxy2"
                return forwarded_for.split(",")[0].strip()

        return request.client.host if request.client else None
