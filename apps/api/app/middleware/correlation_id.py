from __future__ import annotations

import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_correlation_id, set_correlation_id


CORRELATION_HEADER = "x-correlation-id"
_MAX_CORRELATION_ID_LENGTH = 128


def _incoming_correlation_id(request: Request) -> str:
    value = (request.headers.get(CORRELATION_HEADER) or "").strip()
    if not value:
        return str(uuid.uuid4())
    return value[:_MAX_CORRELATION_ID_LENGTH]


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds a correlation id to the request, the log context and the active span.

    Events published and automations dispatched while the request runs inherit
    the same id through the context variable.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = _incoming_correlation_id(request)
        request.state.correlation_id = correlation_id
        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)

        token = set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response
