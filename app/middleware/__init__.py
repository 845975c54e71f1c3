"""
Middleware components for request processing.

- Request context (request ID, client IP, user agent) bound to the log context
"""

from app.middleware.request_context import RequestContextMiddleware

__all__ = ["RequestContextMiddleware"]
