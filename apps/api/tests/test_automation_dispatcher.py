from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base
from app.crm.automation import AutomationDispatcher, as_utc, process_organization_automations
from app.crm.models import (
    CRMAutomationRule,
    CRMAutomationRun,
    CRMDeal,
    CRMNotification,
    CRMPipeline,
    CRMPipelineStage,
    CRMPipelineStageAutomation,
    CRMTask,
    load_custom_data,
)


QUALIFIED_ACTIONS = [
    {"type": "create_task", "config": {"title": "Send proposal", "dueInHours": 24, "assignToOwner": True}},
    {"type": "send_notification", "config": {"title": "Deal qualified", "message": "Prepare the proposal"}},
    {"type": "update_field", "config": {"field": "tags", "value": "qualified"}},
]


@dataclass
class Seed:
    organization_id: uuid.UUID
    new_stage: CRMPipelineStage
    qualified_stage: CRMPipelineStage
    deal: CRMDeal


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def seed(db_session: Session) -> Seed:
    organization_id = uuid.uuid4()
    pipeline = CRMPipeline(organization_id=organization_id, name="Sales", is_default=True)
    db_session.add(pipeline)
    db_session.flush()
    new_stage = CRMPipelineStage(pipeline_id=pipeline.id, name="New", position=1)
    qualified_stage = CRMPipelineStage(pipeline_id=pipeline.id, name="Qualified", position=2)
    db_session.add_all([new_stage, qualified_stage])
    db_session.flush()
    deal = CRMDeal(
        organization_id=organization_id,
        title="Globex expansion",
        pipeline_id=pipeline.id,
        stage_id=new_stage.id,
        owner_user_id=uuid.uuid4(),
        creator_user_id=uuid.uuid4(),
    )
    db_session.add(deal)
    db_session.commit()
    return Seed(organization_id=organization_id, new_stage=new_stage, qualified_stage=qualified_stage, deal=deal)


def _add_automation(
    session: Session,
    seed: Seed,
    stage: CRMPipelineStage,
    actions: object,
    *,
    trigger_type: str = "on_enter",
    duration_minutes: int | None = None,
    is_active: bool = True,
) -> CRMPipelineStageAutomation:
    automation = CRMPipelineStageAutomation(
        organization_id=seed.organization_id,
        stage_id=stage.id,
        trigger_type=trigger_type,
        duration_minutes=duration_minutes,
        actions_json=actions,
        is_active=is_active,
    )
    session.add(automation)
    session.commit()
    return automation


def _enter_stage(session: Session, deal: CRMDeal, stage: CRMPipelineStage) -> None:
    deal.stage_id = stage.id
    deal.stage_sequence = int(deal.stage_sequence) + 1
    deal.stage_entered_at = datetime.now(timezone.utc)
    session.commit()


def _count(session: Session, column: object) -> int:
    return int(session.scalar(select(func.count(column))) or 0)


def test_entering_stage_runs_on_enter_actions(db_session: Session, seed: Seed) -> None:
    _add_automation(db_session, seed, seed.qualified_stage, QUALIFIED_ACTIONS)
    _enter_stage(db_session, seed.deal, seed.qualified_stage)
    started = datetime.now(timezone.utc)

    result = AutomationDispatcher().on_deal_entered_stage(
        db_session,
        seed.deal.id,
        seed.qualified_stage.id,
        seed.organization_id,
    )

    assert result.status == "completed"
    assert result.automations_fired == 1
    assert result.actions_succeeded == 3
    assert result.actions_failed == 0

    task = db_session.scalar(select(CRMTask).where(CRMTask.deal_id == seed.deal.id))
    assert task is not None
    assert task.title == "Send proposal"
    assert task.assignee_user_id == seed.deal.owner_user_id
    assert abs((as_utc(task.due_at) - (started + timedelta(hours=24))).total_seconds()) <= 1

    notification = db_session.scalar(select(CRMNotification).where(CRMNotification.deal_id == seed.deal.id))
    assert notification is not None
    assert notification.user_id == seed.deal.owner_user_id
    assert notification.message == "Prepare the proposal"

    db_session.refresh(seed.deal)
    assert load_custom_data(seed.deal)["tags"] == ["qualified"]

    run = db_session.scalar(select(CRMAutomationRun).where(CRMAutomationRun.deal_id == seed.deal.id))
    assert run is not None
    assert run.stage_sequence == seed.deal.stage_sequence
    assert run.actions_succeeded == 3


def test_replayed_entry_does_not_fire_twice(db_session: Session, seed: Seed) -> None:
    _add_automation(db_session, seed, seed.qualified_stage, QUALIFIED_ACTIONS)
    _enter_stage(db_session, seed.deal, seed.qualified_stage)
    dispatcher = AutomationDispatcher()

    first = dispatcher.on_deal_entered_stage(db_session, seed.deal.id, seed.qualified_stage.id, seed.organization_id)
    second = dispatcher.on_deal_entered_stage(db_session, seed.deal.id, seed.qualified_stage.id, seed.organization_id)

    assert first.automations_fired == 1
    assert second.automations_fired == 0
    assert second.automations_skipped == 1
    assert _count(db_session, CRMTask.id) == 1
    assert _count(db_session, CRMNotification.id) == 1
    assert _count(db_session, CRMAutomationRun.id) == 1


def test_reentering_stage_fires_again(db_session: Session, seed: Seed) -> None:
    _add_automation(db_session, seed, seed.qualified_stage, QUALIFIED_ACTIONS[:1])
    dispatcher = AutomationDispatcher()

    _enter_stage(db_session, seed.deal, seed.qualified_stage)
    dispatcher.on_deal_entered_stage(db_session, seed.deal.id, seed.qualified_stage.id, seed.organization_id)
    _enter_stage(db_session, seed.deal, seed.new_stage)
    dispatcher.on_deal_entered_stage(db_session, seed.deal.id, seed.new_stage.id, seed.organization_id)
    _enter_stage(db_session, seed.deal, seed.qualified_stage)
    dispatcher.on_deal_entered_stage(db_session, seed.deal.id, seed.qualified_stage.id, seed.organization_id)

    assert _count(db_session, CRMTask.id) == 2
    assert _count(db_session, CRMAutomationRun.id) == 2


def test_stage_without_automations_has_no_side_effects(db_session: Session, seed: Seed) -> None:
    _enter_stage(db_session, seed.deal, seed.qualified_stage)
    version_before = seed.deal.row_version

    result = AutomationDispatcher().on_deal_entered_stage(
        db_session,
        seed.deal.id,
        seed.qualified_stage.id,
        seed.organization_id,
    )

    assert result.status == "completed"
    assert result.automations_fired == 0
    assert _count(db_session, CRMTask.id) == 0
    assert _count(db_session, CRMNotification.id) == 0
    db_session.refresh(seed.deal)
    assert seed.deal.row_version == version_before


def test_missing_deal_is_a_noop(db_session: Session, seed: Seed, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING, logger="app.crm.automation")
    _add_automation(db_session, seed, seed.qualified_stage, QUALIFIED_ACTIONS)

    result = AutomationDispatcher().on_deal_entered_stage(
        db_session,
        uuid.uuid4(),
        seed.qualified_stage.id,
        seed.organization_id,
    )

    assert result.status == "deal_not_found"
    assert _count(db_session, CRMTask.id) == 0
    assert any(record.getMessage() == "automation.deal_not_found" for record in caplog.records)


def test_deal_from_another_organization_is_not_found(db_session: Session, seed: Seed) -> None:
    _add_automation(db_session, seed, seed.qualified_stage, QUALIFIED_ACTIONS)
    _enter_stage(db_session, seed.deal, seed.qualified_stage)

    result = AutomationDispatcher().on_deal_entered_stage(
        db_session,
        seed.deal.id,
        seed.qualified_stage.id,
        uuid.uuid4(),
    )

    assert result.status == "deal_not_found"
    assert _count(db_session, CRMTask.id) == 0


def test_failed_action_does_not_stop_the_rest(db_session: Session, seed: Seed) -> None:
    seed.deal.custom_data_json = json.dumps({"tags": "broken"})
    db_session.commit()
    actions = [QUALIFIED_ACTIONS[2], QUALIFIED_ACTIONS[0], QUALIFIED_ACTIONS[1]]
    _add_automation(db_session, seed, seed.qualified_stage, actions)
    _enter_stage(db_session, seed.deal, seed.qualified_stage)

    result = AutomationDispatcher().on_deal_entered_stage(
        db_session,
        seed.deal.id,
        seed.qualified_stage.id,
        seed.organization_id,
    )

    assert result.automations_fired == 1
    assert result.actions_failed == 1
    assert result.actions_succeeded == 2
    assert _count(db_session, CRMTask.id) == 1
    assert _count(db_session, CRMNotification.id) == 1
    run = db_session.scalar(select(CRMAutomationRun))
    assert run is not None
    assert run.actions_failed == 1


def test_unknown_action_type_is_skipped(db_session: Session, seed: Seed) -> None:
    actions = [{"type": "send_sms", "config": {"to": "+15550100"}}, QUALIFIED_ACTIONS[0]]
    _add_automation(db_session, seed, seed.qualified_stage, actions)
    _enter_stage(db_session, seed.deal, seed.qualified_stage)

    result = AutomationDispatcher().on_deal_entered_stage(
        db_session,
        seed.deal.id,
        seed.qualified_stage.id,
        seed.organization_id,
    )

    assert result.automations_fired == 1
    assert result.actions_succeeded == 1
    assert result.actions_skipped == 1
    assert _count(db_session, CRMTask.id) == 1


def test_malformed_action_list_skips_only_that_automation(db_session: Session, seed: Seed) -> None:
    _add_automation(db_session, seed, seed.qualified_stage, "{this is not json")
    _add_automation(db_session, seed, seed.qualified_stage, QUALIFIED_ACTIONS[:1])
    _enter_stage(db_session, seed.deal, seed.qualified_stage)

    result = AutomationDispatcher().on_deal_entered_stage(
        db_session,
        seed.deal.id,
        seed.qualified_stage.id,
        seed.organization_id,
    )

    assert result.status == "completed"
    assert result.automations_fired == 1
    assert result.automations_skipped == 1
    assert _count(db_session, CRMTask.id) == 1
    assert _count(db_session, CRMAutomationRun.id) == 1


def test_inactive_and_duration_automations_do_not_fire_on_enter(db_session: Session, seed: Seed) -> None:
    _add_automation(db_session, seed, seed.qualified_stage, QUALIFIED_ACTIONS, is_active=False)
    _add_automation(
        db_session,
        seed,
        seed.qualified_stage,
        QUALIFIED_ACTIONS,
        trigger_type="on_duration",
        duration_minutes=60,
    )
    _add_automation(db_session, seed, seed.qualified_stage, QUALIFIED_ACTIONS, trigger_type="on_exit")
    _enter_stage(db_session, seed.deal, seed.qualified_stage)

    result = AutomationDispatcher().on_deal_entered_stage(
        db_session,
        seed.deal.id,
        seed.qualified_stage.id,
        seed.organization_id,
    )

    assert result.automations_fired == 0
    assert _count(db_session, CRMTask.id) == 0


def test_deal_already_moved_on_is_not_fired(db_session: Session, seed: Seed) -> None:
    _add_automation(db_session, seed, seed.qualified_stage, QUALIFIED_ACTIONS)

    result = AutomationDispatcher().on_deal_entered_stage(
        db_session,
        seed.deal.id,
        seed.qualified_stage.id,
        seed.organization_id,
    )

    assert result.automations_fired == 0
    assert result.automations_skipped == 1
    assert _count(db_session, CRMTask.id) == 0


def test_process_organization_automations_counts_active_rules(db_session: Session, seed: Seed) -> None:
    actions = [{"type": "create_task", "config": {"title": "Daily follow-up"}}]
    db_session.add_all(
        [
            CRMAutomationRule(
                organization_id=seed.organization_id,
                name="Daily Follow-up Reminders",
                trigger="time_based",
                trigger_config_json={"schedule": "daily"},
                actions_json=actions,
            ),
            CRMAutomationRule(
                organization_id=seed.organization_id,
                name="Proposal chaser",
                trigger="stage_duration",
                actions_json=actions,
            ),
            CRMAutomationRule(
                organization_id=seed.organization_id,
                name="Retired",
                trigger="time_based",
                actions_json=actions,
                is_active=False,
            ),
            CRMAutomationRule(
                organization_id=uuid.uuid4(),
                name="Elsewhere",
                trigger="time_based",
                actions_json=actions,
            ),
        ]
    )
    db_session.commit()

    assert process_organization_automations(db_session, seed.organization_id) == 2
    assert _count(db_session, CRMTask.id) == 0
