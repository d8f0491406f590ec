"""ASGI middleware that binds request-scoped identifiers into structlog.

``X-Request-ID`` is unique per request, ``X-Correlation-ID`` follows a
business flow across services, and ``X-Actor-Type``/``X-Actor-ID`` name the
caller as resolved by the gateway. All four land in structlog context vars
so that every log line of the request carries them.
"""

from __future__ import annotations

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

REQUEST_HEADER = "X-Request-ID"
CORRELATION_HEADER = "X-Correlation-ID"
ACTOR_TYPE_HEADER = "X-Actor-Type"
ACTOR_ID_HEADER = "X-Actor-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get(REQUEST_HEADER) or str(uuid.uuid4())
        correlation_id = request.headers.get(CORRELATION_HEADER) or request_id

        context = {"request_id": request_id, "correlation_id": correlation_id}
        actor_type = request.headers.get(ACTOR_TYPE_HEADER)
        if actor_type:
            context["actor_type"] = actor_type.upper()
            context["actor_id"] = request.headers.get(ACTOR_ID_HEADER)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(**context)
        request.state.correlation_id = correlation_id

        try:
            response: Response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()

        response.headers[REQUEST_HEADER] = request_id
        response.headers[CORRELATION_HEADER] = correlation_id
        return response
