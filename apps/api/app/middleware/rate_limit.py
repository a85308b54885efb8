from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.auth import ANONYMOUS_SUBJECT, decode_bearer_claims
from app.core.config import get_settings


SWEEP_ROUTE_GROUP = "automation-sweep"


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float


class TokenBucketLimiter:
    """Per-caller token buckets, refilled continuously over a fixed window."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def take(self, caller: str, route_group: str, capacity: int, window_seconds: int) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = time.monotonic()
        per_second = capacity / float(window_seconds)
        with self._lock:
            bucket = self._buckets.setdefault((caller, route_group), _Bucket(tokens=float(capacity), refilled_at=now))
            bucket.tokens = min(float(capacity), bucket.tokens + max(0.0, now - bucket.refilled_at) * per_second)
            bucket.refilled_at = now

            if bucket.tokens < 1.0:
                return False, max(1, math.ceil((1.0 - bucket.tokens) / per_second))
            bucket.tokens -= 1.0
            return True, 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = TokenBucketLimiter()


class CrmMutationRateLimitMiddleware(BaseHTTPMiddleware):
    mutating_methods = {"POST", "PATCH", "DELETE"}

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if (
            settings.rate_limit_disabled
            or not path.startswith("/api/crm")
            or request.method.upper() not in self.mutating_methods
        ):
            return await call_next(request)

        route_group = _resolve_route_group(path)
        capacity = (
            settings.rate_limit_crm_sweeps_per_minute
            if route_group == SWEEP_ROUTE_GROUP
            else settings.rate_limit_crm_mutations_per_minute
        )
        allowed, retry_after = _limiter.take(_resolve_caller(request), route_group, capacity, 60)
        if allowed:
            return await call_next(request)

        correlation_id = (
            get_correlation_id()
            or getattr(request.state, "correlation_id", None)
            or request.headers.get("x-correlation-id")
            or str(uuid.uuid4())
        )
        response = JSONResponse(
            status_code=429,
            content={
                "code": "RATE_LIMITED",
                "message": "Too many requests",
                "details": {"route_group": route_group, "retry_after_seconds": retry_after},
                "correlation_id": correlation_id,
            },
        )
        response.headers["Retry-After"] = str(retry_after)
        response.headers["X-Correlation-Id"] = correlation_id
        return response


def _resolve_route_group(path: str) -> str:
    if path.rstrip("/").endswith("/automations/sweep"):
        return SWEEP_ROUTE_GROUP
    parts = [part for part in path.split("/") if part]
    return parts[2] if len(parts) >= 3 else "crm"


def _resolve_caller(request: Request) -> str:
    organization_id = request.headers.get("x-organization-id") or "-"
    claims = decode_bearer_claims(request)
    if claims is None:
        return f"{organization_id}:{ANONYMOUS_SUBJECT}"
    organization_id = str(claims.get("org_id") or organization_id)
    return f"{organization_id}:{claims.get('sub') or ANONYMOUS_SUBJECT}"


def reset_rate_limiter() -> None:
    _limiter.clear()
