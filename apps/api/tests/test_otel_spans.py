from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import nullcontext

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.service import ActorUser
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.otel import setup_inmemory_otel


ALL_PERMISSIONS = {
    "crm.deals.read",
    "crm.deals.write",
    "crm.pipelines.manage",
    "crm.automations.manage",
    "crm.automations.execute",
}


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def organization_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(
    db_session: Session,
    organization_id: uuid.UUID,
    monkeypatch: pytest.MonkeyPatch,
) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            organization_id=organization_id,
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr("app.main.dispatch_session_scope", lambda: nullcontext(db_session))
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_pipeline_with_stages(client: TestClient) -> tuple[str, str]:
    pipeline = client.post("/api/crm/pipelines", json={"name": "Default", "is_default": True})
    assert pipeline.status_code == 201
    pipeline_id = pipeline.json()["id"]

    first = client.post(f"/api/crm/pipelines/{pipeline_id}/stages", json={"name": "New", "position": 1})
    assert first.status_code == 201
    second = client.post(f"/api/crm/pipelines/{pipeline_id}/stages", json={"name": "Qualified", "position": 2})
    assert second.status_code == 201
    return first.json()["id"], second.json()["id"]


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/crm/pipelines",
        json={"name": "Traced"},
        headers={"X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_dispatch_span_contains_deal_and_stage(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    _, qualified_stage_id = _create_pipeline_with_stages(client)
    automation = client.post(
        f"/api/crm/stages/{qualified_stage_id}/automations",
        json={"trigger_type": "on_enter", "actions_json": [{"type": "create_task", "config": {"title": "Traced"}}]},
    )
    assert automation.status_code == 201
    deal = client.post("/api/crm/deals", json={"title": "Traced deal"})
    assert deal.status_code == 201

    moved = client.post(
        f"/api/crm/deals/{deal.json()['id']}/stage",
        json={"stage_id": qualified_stage_id},
        headers={"X-Correlation-Id": "otel-dispatch-1"},
    )
    assert moved.status_code == 200

    dispatch_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.automation.dispatch"]
    assert dispatch_spans
    assert any(
        span.attributes.get("deal_id") == deal.json()["id"]
        and span.attributes.get("stage_id") == qualified_stage_id
        and span.attributes.get("correlation_id") == "otel-dispatch-1"
        and span.attributes.get("automations_fired") == 1
        for span in dispatch_spans
    )


def test_sweep_span_is_recorded(client: TestClient, span_exporter: InMemorySpanExporter, organization_id: uuid.UUID) -> None:
    _create_pipeline_with_stages(client)

    response = client.post("/api/crm/automations/sweep")
    assert response.status_code == 200

    sweep_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.automation.sweep"]
    assert sweep_spans
    assert sweep_spans[-1].attributes.get("organization_id") == str(organization_id)
    assert sweep_spans[-1].attributes.get("cancelled") is False
