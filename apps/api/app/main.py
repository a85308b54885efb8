from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy.orm import Session

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.database import SessionLocal
from app.core.events import InternalEvent, event_bus
from app.crm.automation import automation_dispatcher
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import CrmMutationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")

STAGE_CHANGED_EVENT = "crm.deal.stage_changed"


@dataclass(frozen=True)
class StageEntered:
    deal_id: uuid.UUID
    stage_id: uuid.UUID
    organization_id: uuid.UUID

    @classmethod
    def from_envelope(cls, envelope: Any) -> StageEntered | None:
        if not isinstance(envelope, dict):
            return None
        payload = envelope.get("payload")
        if not isinstance(payload, dict):
            return None
        try:
            return cls(
                deal_id=uuid.UUID(str(payload["deal_id"])),
                stage_id=uuid.UUID(str(payload["stage_id"])),
                organization_id=uuid.UUID(str(envelope["organization_id"])),
            )
        except (KeyError, ValueError):
            return None


@contextmanager
def dispatch_session_scope() -> Iterator[Session]:
    """Session used by event-driven automation dispatch, closed once the dispatch returns."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def _dispatch_stage_entered(event: InternalEvent) -> None:
    if not get_settings().automations_enabled:
        return
    entered = StageEntered.from_envelope(event.payload)
    if entered is None:
        logger.warning("automation.event_ignored", extra={"event_name": event.name})
        return

    try:
        with dispatch_session_scope() as session:
            automation_dispatcher.on_deal_entered_stage(
                session,
                entered.deal_id,
                entered.stage_id,
                entered.organization_id,
            )
    except Exception as exc:
        logger.exception("automation.dispatch_failed", extra={"event_name": event.name, "error": str(exc)[:500]})


def _log_startup(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name, "event_payload": event.payload})


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _log_startup)
    event_bus.subscribe(STAGE_CHANGED_EVENT, _dispatch_stage_entered)
    settings = get_settings()
    event_bus.publish(
        "system.started",
        {"service": "api", "environment": settings.app_env, "automations_enabled": settings.automations_enabled},
    )
    yield


app = FastAPI(title="Dealflow API", version="0.1.0", lifespan=lifespan)
app.add_middleware(CrmMutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if get_settings().otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
