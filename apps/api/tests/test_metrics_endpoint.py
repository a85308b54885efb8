from __future__ import annotations

import uuid
from collections.abc import Generator
from contextlib import nullcontext

import pytest
from fastapi.testclient import TestClient
from prometheus_client.parser import text_string_to_metric_families
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.service import ActorUser
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
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
def client(
    db_session: Session,
    organization_id: uuid.UUID,
    monkeypatch: pytest.MonkeyPatch,
) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_crm_user() -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            organization_id=organization_id,
            permissions={
                "crm.deals.read",
                "crm.deals.write",
                "crm.pipelines.manage",
                "crm.automations.manage",
            },
            correlation_id="metrics-corr-1",
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=["system.metrics.read"])

    app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr("app.main.dispatch_session_scope", lambda: nullcontext(db_session))
    app.dependency_overrides[crm_get_current_user] = override_crm_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _create_pipeline_with_automation(client: TestClient) -> str:
    pipeline = client.post("/api/crm/pipelines", json={"name": "Metrics Pipeline", "is_default": True})
    assert pipeline.status_code == 201
    pipeline_id = pipeline.json()["id"]

    first = client.post(f"/api/crm/pipelines/{pipeline_id}/stages", json={"name": "New", "position": 1})
    assert first.status_code == 201
    second = client.post(f"/api/crm/pipelines/{pipeline_id}/stages", json={"name": "Qualified", "position": 2})
    assert second.status_code == 201

    automation = client.post(
        f"/api/crm/stages/{second.json()['id']}/automations",
        json={"trigger_type": "on_enter", "actions_json": [{"type": "create_task", "config": {"title": "Metrics"}}]},
    )
    assert automation.status_code == 201
    return second.json()["id"]


def _sample_value(body: str, sample_name: str, labels: dict[str, str]) -> float:
    total = 0.0
    for family in text_string_to_metric_families(body):
        for sample in family.samples:
            if sample.name == sample_name and all(sample.labels.get(key) == value for key, value in labels.items()):
                total += sample.value
    return total


def test_metrics_endpoint_exposes_http_and_automation_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    qualified_stage_id = _create_pipeline_with_automation(client)
    deal = client.post("/api/crm/deals", json={"title": "Metrics Deal"})
    assert deal.status_code == 201
    moved = client.post(f"/api/crm/deals/{deal.json()['id']}/stage", json={"stage_id": qualified_stage_id})
    assert moved.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_automation_actions_total" in body
    assert "crm_automation_dispatch_total" in body

    assert _sample_value(body, "http_requests_total", {"path": "/health"}) >= 1
    assert _sample_value(body, "http_requests_total", {"path": "/api/crm/deals/{id}/stage"}) >= 1
    assert _sample_value(body, "crm_automation_actions_total", {"action_type": "create_task", "outcome": "succeeded"}) >= 1
    assert _sample_value(body, "crm_automation_dispatch_total", {"trigger": "on_enter", "status": "completed"}) >= 1


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")

    assert response.status_code == 404


def test_metrics_endpoint_requires_metrics_permission(client: TestClient) -> None:
    app.dependency_overrides[auth_get_current_user] = lambda: AuthUser(sub="rep", roles=["crm.deals.read"])

    response = client.get("/metrics")

    assert response.status_code == 403


def test_metrics_endpoint_allows_system_admin(client: TestClient) -> None:
    app.dependency_overrides[auth_get_current_user] = lambda: AuthUser(sub="root", roles=["system.admin"])

    response = client.get("/metrics")

    assert response.status_code == 200
