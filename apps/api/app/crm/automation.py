"""Pipeline-stage automation engine.

A deal entering a stage fires the stage's active ``on_enter`` automations; a
periodic sweep fires ``on_duration`` automations for open deals that have sat
in their stage past the configured threshold. Each automation fires at most
once per stage visit (``CRMAutomationRun``), each action runs behind its own
savepoint, and nothing in here raises to the caller.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from opentelemetry import trace
from pydantic import ValidationError
from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.context import get_correlation_id, reset_automation_trigger, set_automation_trigger
from app.core.config import get_settings
from app.crm.models import (
    CRMAssignmentCursor,
    CRMAutomationRule,
    CRMAutomationRun,
    CRMDeal,
    CRMNotification,
    CRMPipelineStage,
    CRMPipelineStageAutomation,
    CRMRole,
    CRMSweepLock,
    CRMTask,
    CRMUser,
    load_custom_data,
    utcnow,
)
from app.crm.schemas import (
    ACTION_TYPES,
    AssignUserAction,
    AutomationAction,
    CreateTaskAction,
    SendEmailAction,
    SendNotificationAction,
    UpdateFieldAction,
    automation_action_adapter,
)
from app.metrics import (
    observe_automation_action,
    observe_automation_decode_error,
    observe_automation_dispatch,
    observe_automation_sweep,
    observe_automation_sweep_locked,
)
from app.otel import mark_span_error, set_span_attributes


logger = logging.getLogger("app.crm.automation")
tracer = trace.get_tracer("app.crm.automation")

ActionOutcome = Literal["succeeded", "skipped", "failed"]


class AutomationDecodeError(Exception):
    def __init__(self, reason: str, detail: str) -> None:
        super().__init__(f"{reason}: {detail}")
        self.reason = reason
        self.detail = detail


class AssignmentConflictError(Exception):
    pass


class DealVersionConflictError(Exception):
    pass


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class DecodedActions:
    actions: list[AutomationAction] = field(default_factory=list)
    skipped_unknown: int = 0
    skipped_invalid: int = 0


def decode_actions(raw: Any, *, automation_id: uuid.UUID | None = None) -> DecodedActions:
    """Decode a stored action list into typed actions.

    Raises ``AutomationDecodeError`` when the list itself is unusable. Items
    with an unknown ``type`` or an invalid config are dropped and logged; the
    remaining actions keep their order.
    """
    payload = raw
    if isinstance(raw, (str, bytes)):
        try:
            payload = json.loads(raw)
        except ValueError as exc:
            observe_automation_decode_error("malformed_json")
            raise AutomationDecodeError("malformed_json", str(exc)) from exc

    if not isinstance(payload, list):
        observe_automation_decode_error("not_a_list")
        raise AutomationDecodeError("not_a_list", f"expected a list of actions, got {type(payload).__name__}")

    decoded = DecodedActions()
    for index, item in enumerate(payload):
        action_type = item.get("type") if isinstance(item, dict) else None
        if not isinstance(action_type, str) or not action_type:
            decoded.skipped_invalid += 1
            observe_automation_decode_error("missing_type")
            logger.warning(
                "automation.action_invalid",
                extra={"automation_id": str(automation_id), "action_index": index, "reason": "missing_type"},
            )
            continue

        if action_type not in ACTION_TYPES:
            decoded.skipped_unknown += 1
            observe_automation_action("unknown", "skipped")
            logger.warning(
                "automation.action_unknown",
                extra={"automation_id": str(automation_id), "action_index": index, "action_type": action_type[:64]},
            )
            continue

        try:
            decoded.actions.append(automation_action_adapter.validate_python(item))
        except ValidationError as exc:
            decoded.skipped_invalid += 1
            observe_automation_decode_error("invalid_config")
            logger.warning(
                "automation.action_invalid",
                extra={
                    "automation_id": str(automation_id),
                    "action_index": index,
                    "action_type": action_type,
                    "reason": "invalid_config",
                    "error": str(exc),
                },
            )
    return decoded


@dataclass
class ActionResult:
    action_type: str
    outcome: ActionOutcome
    detail: str | None = None


class RoundRobinAssigner:
    """Rotates deal ownership through the active users holding a role.

    The cursor row per (organization, role) is advanced with a compare-and-swap
    on ``row_version`` so concurrent assignments never hand out the same slot
    twice from one cursor read.
    """

    def next_assignee(self, session: Session, organization_id: uuid.UUID, role_name: str) -> uuid.UUID | None:
        settings = get_settings()
        users = session.scalars(
            select(CRMUser)
            .join(CRMRole, CRMUser.role_id == CRMRole.id)
            .where(
                and_(
                    CRMUser.organization_id == organization_id,
                    CRMUser.is_active.is_(True),
                    CRMRole.organization_id == organization_id,
                    CRMRole.name == role_name,
                )
            )
            .order_by(CRMUser.created_at.asc(), CRMUser.id.asc())
        ).all()
        if not users:
            return None

        for _ in range(max(1, settings.automation_assign_max_retries)):
            cursor = session.scalar(
                select(CRMAssignmentCursor).where(
                    and_(
                        CRMAssignmentCursor.organization_id == organization_id,
                        CRMAssignmentCursor.role_name == role_name,
                    )
                )
            )
            if cursor is None:
                chosen = users[0]
                try:
                    with session.begin_nested():
                        session.add(
                            CRMAssignmentCursor(
                                organization_id=organization_id,
                                role_name=role_name,
                                last_user_id=chosen.id,
                            )
                        )
                        session.flush()
                except IntegrityError:
                    continue
                return chosen.id

            chosen = self._next_after(users, cursor.last_user_id)
            result = session.execute(
                update(CRMAssignmentCursor)
                .where(
                    and_(
                        CRMAssignmentCursor.id == cursor.id,
                        CRMAssignmentCursor.row_version == cursor.row_version,
                    )
                )
                .values(
                    last_user_id=chosen.id,
                    row_version=CRMAssignmentCursor.row_version + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            session.expire(cursor)
            if result.rowcount == 1:
                return chosen.id

        raise AssignmentConflictError(f"assignment cursor for role {role_name!r} kept changing")

    def _next_after(self, users: list[CRMUser], last_user_id: uuid.UUID | None) -> CRMUser:
        user_ids = [user.id for user in users]
        if last_user_id not in user_ids:
            return users[0]
        return users[(user_ids.index(last_user_id) + 1) % len(users)]


class ActionExecutor:
    def __init__(
        self,
        assigner: RoundRobinAssigner | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.assigner = assigner or RoundRobinAssigner()
        self.clock = clock

    def execute(
        self,
        session: Session,
        action: AutomationAction,
        deal: CRMDeal,
        organization_id: uuid.UUID,
    ) -> ActionResult:
        log_fields = {
            "action_type": action.type,
            "deal_id": str(deal.id),
            "organization_id": str(organization_id),
        }
        try:
            with session.begin_nested():
                outcome = self._apply(session, action, deal, organization_id)
        except Exception as exc:
            logger.exception("automation.action_failed", extra={**log_fields, "error": str(exc)})
            observe_automation_action(action.type, "failed")
            return ActionResult(action_type=action.type, outcome="failed", detail=str(exc)[:500])

        observe_automation_action(action.type, outcome)
        logger.info("automation.action_completed", extra={**log_fields, "outcome": outcome})
        return ActionResult(action_type=action.type, outcome=outcome)

    def _apply(
        self,
        session: Session,
        action: AutomationAction,
        deal: CRMDeal,
        organization_id: uuid.UUID,
    ) -> ActionOutcome:
        if isinstance(action, CreateTaskAction):
            return self._create_task(session, action, deal, organization_id)
        if isinstance(action, SendNotificationAction):
            return self._send_notification(session, action, deal, organization_id)
        if isinstance(action, AssignUserAction):
            return self._assign_user(session, action, deal, organization_id)
        if isinstance(action, UpdateFieldAction):
            return self._update_field(session, action, deal)
        if isinstance(action, SendEmailAction):
            return self._send_email(action, deal)
        raise TypeError(f"unsupported action: {type(action).__name__}")

    def _create_task(
        self,
        session: Session,
        action: CreateTaskAction,
        deal: CRMDeal,
        organization_id: uuid.UUID,
    ) -> ActionOutcome:
        config = action.config
        due_in_hours = config.due_in_hours
        if due_in_hours is None:
            due_in_hours = get_settings().automation_default_task_due_hours

        assignee_user_id = deal.owner_user_id if config.assign_to_owner else deal.creator_user_id
        task = CRMTask(
            organization_id=organization_id,
            title=config.title,
            description=config.description or f"Auto-generated task for {deal.title}",
            status="todo",
            priority=config.priority,
            due_at=self.clock() + timedelta(hours=due_in_hours),
            creator_user_id=deal.creator_user_id,
            assignee_user_id=assignee_user_id,
            contact_id=deal.contact_id,
            deal_id=deal.id,
        )
        session.add(task)
        session.flush()
        return "succeeded"

    def _send_notification(
        self,
        session: Session,
        action: SendNotificationAction,
        deal: CRMDeal,
        organization_id: uuid.UUID,
    ) -> ActionOutcome:
        if deal.owner_user_id is None:
            return "skipped"

        config = action.config
        session.add(
            CRMNotification(
                organization_id=organization_id,
                user_id=deal.owner_user_id,
                title=config.title,
                message=config.message or f"Deal {deal.title} requires attention",
                type=config.type,
                deal_id=deal.id,
            )
        )
        session.flush()
        return "succeeded"

    def _assign_user(
        self,
        session: Session,
        action: AssignUserAction,
        deal: CRMDeal,
        organization_id: uuid.UUID,
    ) -> ActionOutcome:
        config = action.config
        if config.strategy != "round_robin" or not config.role:
            logger.info(
                "automation.assign_skipped",
                extra={"deal_id": str(deal.id), "role": config.role, "reason": f"strategy={config.strategy}"},
            )
            return "skipped"

        assignee_user_id = self.assigner.next_assignee(session, organization_id, config.role)
        if assignee_user_id is None:
            logger.info(
                "automation.assign_skipped",
                extra={"deal_id": str(deal.id), "role": config.role, "reason": "no_user_with_role"},
            )
            return "skipped"

        self._write_deal(session, deal, lambda current: {"owner_user_id": assignee_user_id})
        logger.info(
            "automation.deal_assigned",
            extra={"deal_id": str(deal.id), "role": config.role, "assignee_user_id": str(assignee_user_id)},
        )
        return "succeeded"

    def _update_field(self, session: Session, action: UpdateFieldAction, deal: CRMDeal) -> ActionOutcome:
        config = action.config
        if config.field != "tags" or config.value is None:
            logger.info(
                "automation.update_field_skipped",
                extra={"deal_id": str(deal.id), "reason": f"unsupported update of {config.field}"},
            )
            return "skipped"

        def add_tag(current: CRMDeal) -> dict[str, Any] | None:
            data = load_custom_data(current)
            tags = data.get("tags") or []
            if not isinstance(tags, list):
                raise ValueError("deal tags must be a list")
            if config.value in tags:
                return None
            data["tags"] = [*tags, config.value]
            return {"custom_data_json": json.dumps(data)}

        return "succeeded" if self._write_deal(session, deal, add_tag) else "skipped"

    def _write_deal(
        self,
        session: Session,
        deal: CRMDeal,
        changes: Callable[[CRMDeal], dict[str, Any] | None],
    ) -> bool:
        """Apply ``changes`` with a compare-and-swap on ``row_version``.

        ``changes`` is recomputed from a refreshed row after a lost race and may
        return ``None`` when there is nothing left to write.
        """
        for attempt in range(max(1, get_settings().automation_deal_write_max_retries)):
            if attempt:
                session.refresh(deal)
            values = changes(deal)
            if values is None:
                return False
            result = session.execute(
                update(CRMDeal)
                .where(and_(CRMDeal.id == deal.id, CRMDeal.row_version == deal.row_version))
                .values(**values, row_version=CRMDeal.row_version + 1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                session.refresh(deal)
                return True
            logger.info(
                "automation.deal_version_conflict",
                extra={"deal_id": str(deal.id), "reason": f"attempt={attempt + 1}"},
            )
        raise DealVersionConflictError(f"deal {deal.id} kept changing while the automation wrote to it")

    def _send_email(self, action: SendEmailAction, deal: CRMDeal) -> ActionOutcome:
        # TODO: hand off to the outbound mail service once it exposes a send API.
        logger.info(
            "automation.email_not_implemented",
            extra={"deal_id": str(deal.id), "reason": json.dumps(action.config.model_dump(mode="json"))[:200]},
        )
        return "skipped"


@dataclass
class AutomationFireResult:
    automation_id: uuid.UUID
    status: Literal["fired", "already_fired", "invalid", "stale"]
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


class AutomationRunner:
    """Fires one automation for one deal visit: decode, claim, execute, record."""

    def __init__(self, executor: ActionExecutor | None = None) -> None:
        self.executor = executor or ActionExecutor()

    def fire(
        self,
        session: Session,
        automation: CRMPipelineStageAutomation,
        deal: CRMDeal,
        organization_id: uuid.UUID,
    ) -> AutomationFireResult:
        automation_id = automation.id
        log_fields = {
            "automation_id": str(automation_id),
            "deal_id": str(deal.id),
            "stage_id": str(automation.stage_id),
            "trigger_type": automation.trigger_type,
            "organization_id": str(organization_id),
        }

        try:
            decoded = decode_actions(automation.actions_json, automation_id=automation_id)
        except AutomationDecodeError as exc:
            logger.error("automation.actions_invalid", extra={**log_fields, "reason": exc.reason, "error": exc.detail})
            return AutomationFireResult(automation_id=automation_id, status="invalid")

        if deal.stage_id != automation.stage_id:
            logger.info("automation.stale_stage", extra=log_fields)
            return AutomationFireResult(automation_id=automation_id, status="stale")

        run = self._claim(session, automation, deal)
        if run is None:
            logger.info("automation.already_fired", extra=log_fields)
            return AutomationFireResult(automation_id=automation_id, status="already_fired")

        result = AutomationFireResult(automation_id=automation_id, status="fired", skipped=decoded.skipped_unknown)
        for action in decoded.actions:
            action_result = self.executor.execute(session, action, deal, organization_id)
            if action_result.outcome == "succeeded":
                result.succeeded += 1
            elif action_result.outcome == "failed":
                result.failed += 1
            else:
                result.skipped += 1

        run.actions_succeeded = result.succeeded
        run.actions_failed = result.failed
        run.actions_skipped = result.skipped + decoded.skipped_invalid
        session.add(run)
        session.commit()
        logger.info(
            "automation.fired",
            extra={**log_fields, "outcome": f"succeeded={result.succeeded} failed={result.failed} skipped={result.skipped}"},
        )
        return result

    def _claim(
        self,
        session: Session,
        automation: CRMPipelineStageAutomation,
        deal: CRMDeal,
    ) -> CRMAutomationRun | None:
        stage_sequence = deal.stage_sequence
        existing = session.scalar(
            select(CRMAutomationRun.id).where(
                and_(
                    CRMAutomationRun.automation_id == automation.id,
                    CRMAutomationRun.deal_id == deal.id,
                    CRMAutomationRun.stage_sequence == stage_sequence,
                )
            )
        )
        if existing is not None:
            return None

        run = CRMAutomationRun(
            automation_id=automation.id,
            deal_id=deal.id,
            stage_sequence=stage_sequence,
            trigger_type=automation.trigger_type,
            fired_at=utcnow(),
        )
        session.add(run)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            return None
        return run


@dataclass
class DispatchResult:
    status: Literal["completed", "deal_not_found", "aborted"]
    deal_id: uuid.UUID
    stage_id: uuid.UUID
    automations_fired: int = 0
    automations_skipped: int = 0
    actions_succeeded: int = 0
    actions_failed: int = 0
    actions_skipped: int = 0


class AutomationDispatcher:
    def __init__(self, runner: AutomationRunner | None = None) -> None:
        self.runner = runner or AutomationRunner()

    def on_deal_entered_stage(
        self,
        session: Session,
        deal_id: uuid.UUID,
        stage_id: uuid.UUID,
        organization_id: uuid.UUID,
    ) -> DispatchResult:
        result = DispatchResult(status="completed", deal_id=deal_id, stage_id=stage_id)
        log_fields = {"deal_id": str(deal_id), "stage_id": str(stage_id), "organization_id": str(organization_id)}
        trigger_token = set_automation_trigger("on_enter")
        try:
            with tracer.start_as_current_span("crm.automation.dispatch") as span:
                set_span_attributes(
                    span,
                    deal_id=deal_id,
                    stage_id=stage_id,
                    organization_id=organization_id,
                    correlation_id=get_correlation_id(),
                )
                try:
                    deal = session.scalar(
                        select(CRMDeal)
                        .where(and_(CRMDeal.id == deal_id, CRMDeal.organization_id == organization_id))
                        .options(selectinload(CRMDeal.contact), selectinload(CRMDeal.owner))
                    )
                    if deal is None:
                        logger.warning("automation.deal_not_found", extra=log_fields)
                        result.status = "deal_not_found"
                        return result

                    automations = self._load_automations(session, stage_id, "on_enter")
                    pending_duration = session.scalar(
                        select(func.count(CRMPipelineStageAutomation.id)).where(
                            and_(
                                CRMPipelineStageAutomation.stage_id == stage_id,
                                CRMPipelineStageAutomation.is_active.is_(True),
                                CRMPipelineStageAutomation.trigger_type == "on_duration",
                            )
                        )
                    )
                except Exception as exc:
                    session.rollback()
                    logger.exception("automation.dispatch_load_failed", extra={**log_fields, "error": str(exc)})
                    mark_span_error(span, exc)
                    result.status = "aborted"
                    return result

                for automation in automations:
                    self._fire(session, automation, deal, organization_id, result, log_fields)

                span.set_attribute("automations_fired", result.automations_fired)
                logger.info(
                    "automation.dispatch_completed",
                    extra={
                        **log_fields,
                        "automations_fired": result.automations_fired,
                        "automations_skipped": result.automations_skipped,
                        "pending_duration_automations": pending_duration or 0,
                    },
                )
                return result
        finally:
            observe_automation_dispatch("on_enter", result.status)
            reset_automation_trigger(trigger_token)

    def _fire(
        self,
        session: Session,
        automation: CRMPipelineStageAutomation,
        deal: CRMDeal,
        organization_id: uuid.UUID,
        result: DispatchResult,
        log_fields: dict[str, str],
    ) -> None:
        automation_id = automation.id
        try:
            fired = self.runner.fire(session, automation, deal, organization_id)
        except Exception as exc:
            session.rollback()
            logger.exception(
                "automation.fire_failed",
                extra={**log_fields, "automation_id": str(automation_id), "error": str(exc)},
            )
            result.automations_skipped += 1
            return

        if fired.status != "fired":
            result.automations_skipped += 1
            return
        result.automations_fired += 1
        result.actions_succeeded += fired.succeeded
        result.actions_failed += fired.failed
        result.actions_skipped += fired.skipped

    def _load_automations(
        self,
        session: Session,
        stage_id: uuid.UUID,
        trigger_type: str,
    ) -> list[CRMPipelineStageAutomation]:
        return list(
            session.scalars(
                select(CRMPipelineStageAutomation)
                .where(
                    and_(
                        CRMPipelineStageAutomation.stage_id == stage_id,
                        CRMPipelineStageAutomation.is_active.is_(True),
                        CRMPipelineStageAutomation.trigger_type == trigger_type,
                    )
                )
                .order_by(CRMPipelineStageAutomation.created_at.asc())
            ).all()
        )


@dataclass
class SweepResult:
    organizations_swept: int = 0
    organizations_locked: int = 0
    deals_checked: int = 0
    automations_fired: int = 0
    automations_already_fired: int = 0
    cancelled: bool = False


class DurationSweeper:
    def __init__(self, runner: AutomationRunner | None = None) -> None:
        self.runner = runner or AutomationRunner()

    def sweep_duration_automations(
        self,
        session: Session,
        *,
        organization_id: uuid.UUID | None = None,
        now: datetime | None = None,
        cancel_event: threading.Event | None = None,
    ) -> SweepResult:
        settings = get_settings()
        started = time.perf_counter()
        deadline = started + settings.automation_sweep_max_runtime_seconds
        sweep_now = as_utc(now) if now is not None else utcnow()
        holder = f"sweep-{uuid.uuid4().hex[:16]}"
        result = SweepResult()

        trigger_token = set_automation_trigger("on_duration")
        try:
            with tracer.start_as_current_span("crm.automation.sweep") as span:
                set_span_attributes(span, organization_id=organization_id, correlation_id=get_correlation_id())
                try:
                    organization_ids = (
                        [organization_id] if organization_id is not None else self._organizations_with_open_deals(session)
                    )
                except Exception as exc:
                    session.rollback()
                    logger.exception("automation.sweep_load_failed", extra={"error": str(exc)})
                    mark_span_error(span, exc)
                    return result

                for org_id in organization_ids:
                    if self._should_stop(cancel_event, deadline):
                        result.cancelled = True
                        break
                    if not self._acquire_lock(session, org_id, holder, sweep_now):
                        result.organizations_locked += 1
                        observe_automation_sweep_locked()
                        logger.info("automation.sweep_locked", extra={"organization_id": str(org_id)})
                        continue
                    try:
                        self._sweep_organization(session, org_id, sweep_now, result, cancel_event, deadline)
                        result.organizations_swept += 1
                    except Exception as exc:
                        session.rollback()
                        logger.exception(
                            "automation.sweep_organization_failed",
                            extra={"organization_id": str(org_id), "error": str(exc)},
                        )
                    finally:
                        self._release_lock(session, org_id, holder)

                set_span_attributes(span, automations_fired=result.automations_fired, cancelled=result.cancelled)
        finally:
            observe_automation_sweep(time.perf_counter() - started)
            observe_automation_dispatch("on_duration", "cancelled" if result.cancelled else "completed")
            reset_automation_trigger(trigger_token)

        logger.info(
            "automation.sweep_completed",
            extra={
                "organizations_swept": result.organizations_swept,
                "organizations_locked": result.organizations_locked,
                "deals_checked": result.deals_checked,
                "automations_fired": result.automations_fired,
                "status": "cancelled" if result.cancelled else "completed",
            },
        )
        return result

    def _sweep_organization(
        self,
        session: Session,
        organization_id: uuid.UUID,
        now: datetime,
        result: SweepResult,
        cancel_event: threading.Event | None,
        deadline: float,
    ) -> None:
        deals = session.scalars(
            select(CRMDeal)
            .where(and_(CRMDeal.organization_id == organization_id, CRMDeal.status == "open"))
            .options(selectinload(CRMDeal.stage).selectinload(CRMPipelineStage.automations))
            .order_by(CRMDeal.created_at.asc(), CRMDeal.id.asc())
        ).all()

        for deal in deals:
            if self._should_stop(cancel_event, deadline):
                result.cancelled = True
                return
            result.deals_checked += 1
            if deal.stage is None:
                continue

            automations = [
                automation
                for automation in deal.stage.automations
                if automation.is_active and automation.trigger_type == "on_duration"
            ]
            for automation in automations:
                if not automation.duration_minutes:
                    continue
                minutes_in_stage = (now - as_utc(deal.stage_entered_at)).total_seconds() / 60
                if minutes_in_stage < automation.duration_minutes:
                    continue

                session.refresh(deal)
                if deal.status != "open":
                    break
                fired = self.runner.fire(session, automation, deal, organization_id)
                if fired.status == "fired":
                    result.automations_fired += 1
                elif fired.status == "already_fired":
                    result.automations_already_fired += 1

    def _organizations_with_open_deals(self, session: Session) -> list[uuid.UUID]:
        return list(
            session.scalars(
                select(CRMDeal.organization_id)
                .where(CRMDeal.status == "open")
                .distinct()
                .order_by(CRMDeal.organization_id)
            ).all()
        )

    def _acquire_lock(self, session: Session, organization_id: uuid.UUID, holder: str, now: datetime) -> bool:
        ttl = timedelta(seconds=get_settings().automation_sweep_lock_ttl_seconds)
        taken_over = session.execute(
            update(CRMSweepLock)
            .where(and_(CRMSweepLock.organization_id == organization_id, CRMSweepLock.locked_until < now))
            .values(holder=holder, locked_until=now + ttl, acquired_at=now)
            .execution_options(synchronize_session=False)
        )
        if taken_over.rowcount == 1:
            session.commit()
            return True

        try:
            session.execute(
                insert(CRMSweepLock).values(
                    organization_id=organization_id,
                    holder=holder,
                    locked_until=now + ttl,
                    acquired_at=now,
                )
            )
            session.commit()
        except IntegrityError:
            session.rollback()
            return False
        return True

    def _release_lock(self, session: Session, organization_id: uuid.UUID, holder: str) -> None:
        try:
            session.execute(
                delete(CRMSweepLock)
                .where(and_(CRMSweepLock.organization_id == organization_id, CRMSweepLock.holder == holder))
                .execution_options(synchronize_session=False)
            )
            session.commit()
        except Exception as exc:
            session.rollback()
            logger.exception("automation.sweep_unlock_failed", extra={"organization_id": str(organization_id), "error": str(exc)})

    def _should_stop(self, cancel_event: threading.Event | None, deadline: float) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        return time.perf_counter() >= deadline


def process_organization_automations(session: Session, organization_id: uuid.UUID) -> int:
    """Enumerate an organization's active rules; nothing is executed yet."""
    try:
        rules = session.scalars(
            select(CRMAutomationRule)
            .where(and_(CRMAutomationRule.organization_id == organization_id, CRMAutomationRule.is_active.is_(True)))
            .order_by(CRMAutomationRule.created_at.asc())
        ).all()
    except Exception as exc:
        session.rollback()
        logger.exception(
            "automation.rules_load_failed",
            extra={"organization_id": str(organization_id), "error": str(exc)},
        )
        return 0

    for rule in rules:
        if rule.trigger == "time_based":
            logger.info(
                "automation.rule_pending",
                extra={"organization_id": str(organization_id), "rule_id": str(rule.id), "rule_name": rule.name},
            )
    return len(rules)


automation_dispatcher = AutomationDispatcher()
duration_sweeper = DurationSweeper()
