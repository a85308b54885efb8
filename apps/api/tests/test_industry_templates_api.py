from __future__ import annotations

import json
import uuid
from collections.abc import Callable, Generator
from contextlib import nullcontext

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user
from app.crm.models import CRMOrganization
from app.crm.service import ActorUser
from app.crm.templates import INDUSTRY_TEMPLATES
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


ALL_PERMISSIONS = {
    "crm.deals.read",
    "crm.deals.write",
    "crm.pipelines.manage",
    "crm.automations.read",
    "crm.automations.manage",
    "crm.templates.apply",
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
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def organization_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def client(
    db_session: Session,
    organization_id: uuid.UUID,
    monkeypatch: pytest.MonkeyPatch,
) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "admin": ActorUser(
            user_id="admin-1",
            organization_id=organization_id,
            permissions=ALL_PERMISSIONS,
            is_admin=True,
            correlation_id="corr-industry",
        ),
        "member": ActorUser(
            user_id="member-1",
            organization_id=organization_id,
            permissions=ALL_PERMISSIONS,
            is_admin=False,
            correlation_id="corr-industry",
        ),
    }
    state = {"current": "admin"}

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr("app.main.dispatch_session_scope", lambda: nullcontext(db_session))
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _apply(client: TestClient, industry_id: str) -> dict:
    response = client.post("/api/crm/industry/apply", json={"industryId": industry_id})
    assert response.status_code == 200
    return response.json()


def test_templates_are_listed(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.get("/api/crm/industry/templates")

    assert response.status_code == 200
    summaries = {item["id"]: item for item in response.json()}
    assert set(summaries) == {"education", "agency", "recruitment", "sme"}
    assert summaries["education"]["stage_count"] == len(INDUSTRY_TEMPLATES["education"].stages)
    assert summaries["education"]["automation_count"] > 0


def test_apply_requires_admin(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("member")

    response = test_client.post("/api/crm/industry/apply", json={"industryId": "education"})

    assert response.status_code == 403
    assert response.json()["message"] == "Only admins can apply industry templates"


def test_apply_unknown_template(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.post("/api/crm/industry/apply", json={"industryId": "space_mining"})

    assert response.status_code == 404
    assert response.json()["message"] == "Template not found"


def test_apply_installs_pipeline_automations_and_rules(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    organization_id: uuid.UUID,
) -> None:
    test_client, _ = client

    applied = _apply(test_client, "education")
    assert applied["success"] is True

    pipelines = test_client.get("/api/crm/pipelines").json()
    assert len(pipelines) == 1
    pipeline = pipelines[0]
    assert pipeline["id"] == applied["pipeline_id"]
    assert pipeline["is_default"] is True
    stage_names = [stage["name"] for stage in pipeline["stages"]]
    assert stage_names == [stage.name for stage in INDUSTRY_TEMPLATES["education"].stages]

    first_stage = pipeline["stages"][0]
    assert first_stage["sub_statuses"] == ["WhatsApp", "Call", "Form", "Walk-in"]
    automations = test_client.get(f"/api/crm/stages/{first_stage['id']}/automations").json()
    assert sorted(item["trigger_type"] for item in automations) == ["on_duration", "on_enter"]
    duration = next(item for item in automations if item["trigger_type"] == "on_duration")
    assert duration["duration_minutes"] == 1440

    rules = test_client.get("/api/crm/automation-rules").json()
    assert [rule["name"] for rule in rules] == ["Daily Follow-up Reminders"]
    assert rules[0]["industry_type"] == "education"

    organization = db_session.get(CRMOrganization, organization_id)
    assert organization is not None
    assert organization.industry == "education"
    settings = json.loads(organization.settings_json or "{}")
    assert settings["template_version"] == "1.0"
    assert [field["name"] for field in settings["custom_fields"]] == [
        "desiredCountry",
        "educationLevel",
        "englishTestStatus",
        "budget",
    ]
    assert any(entry["entity_type"] == "crm.industry_template" for entry in audit.audit_entries)


def test_new_deal_runs_template_on_enter_automations(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _apply(test_client, "education")

    deal = test_client.post("/api/crm/deals", json={"title": "Priya - MSc Canada"})
    assert deal.status_code == 201

    tasks = test_client.get("/api/crm/tasks", params={"deal_id": deal.json()["id"]}).json()
    assert [task["title"] for task in tasks] == ["Schedule first counseling call"]
    assert tasks[0]["priority"] == "high"

    notifications = test_client.get("/api/crm/notifications").json()
    assert [item["message"] for item in notifications] == ["New inquiry assigned to you"]


def test_reapplying_moves_deals_to_new_first_stage(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    first = _apply(test_client, "education")
    deal = test_client.post("/api/crm/deals", json={"title": "Acme website rebuild"}).json()

    second = _apply(test_client, "agency")

    assert second["pipeline_id"] == first["pipeline_id"]
    pipelines = test_client.get("/api/crm/pipelines").json()
    assert len(pipelines) == 1
    stages = pipelines[0]["stages"]
    assert [stage["name"] for stage in stages] == [stage.name for stage in INDUSTRY_TEMPLATES["agency"].stages]
    assert pipelines[0]["deal_count"] == 1

    moved = test_client.get(f"/api/crm/deals/{deal['id']}").json()
    assert moved["stage_id"] == stages[0]["id"]
    assert moved["stage_sequence"] == 2

    rule_names = {rule["name"] for rule in test_client.get("/api/crm/automation-rules").json()}
    assert "Proposal Follow-up Automation" in rule_names


def test_apply_recruitment_skips_specialization_assignment(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    organization_id: uuid.UUID,
) -> None:
    test_client, _ = client
    _apply(test_client, "recruitment")

    stages = test_client.get("/api/crm/pipelines").json()[0]["stages"]
    assert [stage["name"] for stage in stages][:2] == ["Candidate Sourced", "Screening Completed"]
    assert stages[-1]["name"] == "Dropout / No-show"
    offer_stage = next(stage for stage in stages if stage["name"] == "Offer Rolled Out")
    offer_automations = test_client.get(f"/api/crm/stages/{offer_stage['id']}/automations").json()
    duration = next(item for item in offer_automations if item["trigger_type"] == "on_duration")
    assert duration["duration_minutes"] == 4320

    deal = test_client.post("/api/crm/deals", json={"title": "Senior Backend Engineer - Ravi"})
    assert deal.status_code == 201
    tasks = test_client.get("/api/crm/tasks", params={"deal_id": deal.json()["id"]}).json()
    assert [task["title"] for task in tasks] == ["Screen candidate resume"]
    assert tasks[0]["priority"] == "medium"
    creator = ActorUser(user_id="admin-1", organization_id=organization_id, permissions=ALL_PERMISSIONS, is_admin=True)
    assert deal.json()["owner_user_id"] == str(creator.user_uuid)

    rules = test_client.get("/api/crm/automation-rules").json()
    assert sorted(rule["name"] for rule in rules) == ["Daily Candidate Status Check", "Dropout Prediction"]
    organization = db_session.get(CRMOrganization, organization_id)
    settings = json.loads(organization.settings_json or "{}")
    assert [field["name"] for field in settings["custom_fields"]] == ["noticePeriod", "expectedSalary", "currentRole"]


def test_apply_sme_installs_founder_pipeline(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    applied = _apply(test_client, "sme")
    assert applied["message"] == "SME / Founder-Led Sales template applied successfully"

    stages = test_client.get("/api/crm/pipelines").json()[0]["stages"]
    assert [stage["name"] for stage in stages] == [stage.name for stage in INDUSTRY_TEMPLATES["sme"].stages]
    assert stages[0]["probability"] == 10
    first_automations = test_client.get(f"/api/crm/stages/{stages[0]['id']}/automations").json()
    assert sorted(item["trigger_type"] for item in first_automations) == ["on_duration", "on_enter"]

    deal = test_client.post("/api/crm/deals", json={"title": "Corner bakery website"})
    tasks = test_client.get("/api/crm/tasks", params={"deal_id": deal.json()["id"]}).json()
    assert [task["title"] for task in tasks] == ["Reach out to new lead"]
    assert tasks[0]["priority"] == "high"

    rules = test_client.get("/api/crm/automation-rules").json()
    assert {rule["name"]: rule["trigger"] for rule in rules} == {
        "Daily Pipeline Review": "time_based",
        "Silence Alert": "stage_duration",
    }
