import uuid
from dataclasses import dataclass, field

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


REQUEST_ID_HEADER = "x-request-id"
ORGANIZATION_HEADER = "x-organization-id"


@dataclass
class RequestContext:
    correlation_id: str
    organization_id: str | None
    user_id: str | None = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach a mutable ``RequestContext`` to ``request.state``.

    ``get_current_user`` fills in the user and token organization once the
    bearer token is decoded.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        context = RequestContext(
            correlation_id=getattr(request.state, "correlation_id", None) or "",
            organization_id=(request.headers.get(ORGANIZATION_HEADER) or "").strip() or None,
        )
        request.state.context = context
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = context.request_id
        return response
