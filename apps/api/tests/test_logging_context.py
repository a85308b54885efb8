from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator
from contextlib import nullcontext

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.context import reset_automation_trigger, set_automation_trigger
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.service import ActorUser
from app.logging import CorrelationIdFilter, JsonLogFormatter
from app.middleware.rate_limit import reset_rate_limiter
from app.main import app


ALL_PERMISSIONS = {
    "crm.deals.read",
    "crm.deals.write",
    "crm.pipelines.manage",
    "crm.automations.manage",
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


def _create_pipeline_with_automation(client: TestClient) -> str:
    pipeline = client.post("/api/crm/pipelines", json={"name": "Default", "is_default": True})
    assert pipeline.status_code == 201
    pipeline_id = pipeline.json()["id"]

    first = client.post(f"/api/crm/pipelines/{pipeline_id}/stages", json={"name": "New", "position": 1})
    assert first.status_code == 201
    second = client.post(f"/api/crm/pipelines/{pipeline_id}/stages", json={"name": "Qualified", "position": 2})
    assert second.status_code == 201

    automation = client.post(
        f"/api/crm/stages/{second.json()['id']}/automations",
        json={"trigger_type": "on_enter", "actions_json": [{"type": "create_task", "config": {"title": "Log me"}}]},
    )
    assert automation.status_code == 201
    return second.json()["id"]


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    path = f"/api/crm/deals/{uuid.uuid4()}"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/deals/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_automation_logs_carry_trigger_and_correlation_id(
    client: TestClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    qualified_stage_id = _create_pipeline_with_automation(client)
    deal = client.post("/api/crm/deals", json={"title": "Logged deal"})
    assert deal.status_code == 201

    moved = client.post(
        f"/api/crm/deals/{deal.json()['id']}/stage",
        json={"stage_id": qualified_stage_id},
        headers={"X-Correlation-Id": "abc-456"},
    )
    assert moved.status_code == 200

    automation_records = [record for record in caplog.records if record.name == "app.crm.automation"]
    fired = [record for record in automation_records if record.getMessage() == "automation.fired"]
    assert fired
    assert any(
        getattr(record, "deal_id", None) == deal.json()["id"]
        and getattr(record, "trigger_type", None) == "on_enter"
        and getattr(record, "correlation_id", None) == "abc-456"
        for record in fired
    )
    completed = [record for record in automation_records if record.getMessage() == "automation.dispatch_completed"]
    assert any(getattr(record, "automations_fired", None) == 1 for record in completed)


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "app.crm.automation",
            "levelno": logging.INFO,
            "levelname": "INFO",
            "msg": "automation.action_completed",
            "deal_id": "deal-1",
            "action_type": "create_task",
            "outcome": "succeeded",
            "password": "hunter2",
        }
    )
    token = set_automation_trigger("on_duration")
    try:
        CorrelationIdFilter().filter(record)
    finally:
        reset_automation_trigger(token)

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "automation.action_completed"
    assert payload["automation_trigger"] == "on_duration"
    assert payload["fields"] == {"deal_id": "deal-1", "action_type": "create_task", "outcome": "succeeded"}
