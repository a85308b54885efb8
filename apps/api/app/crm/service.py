from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app import audit, events
from app.crm.models import (
    CRMAutomationRule,
    CRMContact,
    CRMDeal,
    CRMDealStageHistory,
    CRMNotification,
    CRMPipeline,
    CRMPipelineStage,
    CRMPipelineStageAutomation,
    CRMTask,
    load_custom_data,
)
from app.crm.schemas import (
    AutomationRuleCreate,
    AutomationRuleRead,
    DealCreate,
    DealRead,
    DealStageChangeRequest,
    DealUpdate,
    NotificationRead,
    PipelineCreate,
    PipelineRead,
    PipelineStageCreate,
    PipelineStageRead,
    StageAutomationCreate,
    StageAutomationRead,
    StageAutomationUpdate,
    TaskRead,
)


logger = logging.getLogger("app.crm.service")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_user_uuid(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        return uuid.uuid5(uuid.NAMESPACE_URL, f"dealflow-actor:{value}")


@dataclass
class ActorUser:
    user_id: str
    organization_id: uuid.UUID | None
    permissions: set[str] = field(default_factory=set)
    is_admin: bool = False
    correlation_id: str | None = None

    @property
    def user_uuid(self) -> uuid.UUID:
        return _coerce_user_uuid(self.user_id)


def _require_organization(actor_user: ActorUser) -> uuid.UUID:
    if actor_user.organization_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="organization context required")
    return actor_user.organization_id


class PipelineService:
    entity_type = "crm.pipeline"

    def list_pipelines(self, session: Session, actor_user: ActorUser) -> list[PipelineRead]:
        organization_id = _require_organization(actor_user)
        pipelines = session.scalars(
            select(CRMPipeline)
            .where(CRMPipeline.organization_id == organization_id)
            .options(selectinload(CRMPipeline.stages))
            .order_by(CRMPipeline.is_default.desc(), CRMPipeline.created_at.asc())
        ).all()
        deal_counts = dict(
            session.execute(
                select(CRMDeal.pipeline_id, func.count(CRMDeal.id))
                .where(CRMDeal.organization_id == organization_id)
                .group_by(CRMDeal.pipeline_id)
            ).all()
        )
        return [self._to_pipeline_read(pipeline, deal_counts.get(pipeline.id, 0)) for pipeline in pipelines]

    def create_pipeline(self, session: Session, actor_user: ActorUser, dto: PipelineCreate) -> PipelineRead:
        organization_id = _require_organization(actor_user)
        pipeline = CRMPipeline(
            organization_id=organization_id,
            name=dto.name.strip(),
            is_default=dto.is_default,
        )
        session.add(pipeline)
        session.flush()

        if dto.is_default:
            self._unset_other_defaults(session, pipeline.id, organization_id)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(pipeline.id),
            action="create",
            before=None,
            after={"name": pipeline.name, "is_default": pipeline.is_default},
            correlation_id=actor_user.correlation_id,
            organization_id=str(organization_id),
        )
        session.commit()
        return self._to_pipeline_read(pipeline, 0)

    def add_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        dto: PipelineStageCreate,
    ) -> PipelineStageRead:
        organization_id = _require_organization(actor_user)
        pipeline = session.scalar(
            select(CRMPipeline).where(
                and_(CRMPipeline.id == pipeline_id, CRMPipeline.organization_id == organization_id)
            )
        )
        if pipeline is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="pipeline not found")

        stage = CRMPipelineStage(
            pipeline_id=pipeline.id,
            name=dto.name.strip(),
            position=dto.position,
            color=dto.color,
            probability=dto.probability,
            description=dto.description,
            intent=dto.intent,
            required_fields=dto.required_fields,
            sub_statuses=dto.sub_statuses,
            failure_signals=dto.failure_signals,
        )
        session.add(stage)
        try:
            session.flush()
        except IntegrityError as exc:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="stage position already taken") from exc

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=f"{self.entity_type}.stage",
            entity_id=str(stage.id),
            action="create",
            before=None,
            after={"pipeline_id": str(stage.pipeline_id), "name": stage.name, "position": stage.position},
            correlation_id=actor_user.correlation_id,
            organization_id=str(organization_id),
        )
        session.commit()
        return PipelineStageRead.model_validate(stage)

    def get_default_pipeline(self, session: Session, organization_id: uuid.UUID) -> CRMPipeline | None:
        return session.scalar(
            select(CRMPipeline)
            .where(CRMPipeline.organization_id == organization_id)
            .options(selectinload(CRMPipeline.stages))
            .order_by(CRMPipeline.is_default.desc(), CRMPipeline.created_at.asc())
            .limit(1)
        )

    def get_stage(self, session: Session, organization_id: uuid.UUID, stage_id: uuid.UUID) -> CRMPipelineStage:
        stage = session.scalar(
            select(CRMPipelineStage)
            .join(CRMPipeline, CRMPipelineStage.pipeline_id == CRMPipeline.id)
            .where(and_(CRMPipelineStage.id == stage_id, CRMPipeline.organization_id == organization_id))
        )
        if stage is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="stage not found")
        return stage

    def _unset_other_defaults(self, session: Session, pipeline_id: uuid.UUID, organization_id: uuid.UUID) -> None:
        session.execute(
            update(CRMPipeline)
            .where(
                and_(
                    CRMPipeline.organization_id == organization_id,
                    CRMPipeline.id != pipeline_id,
                    CRMPipeline.is_default.is_(True),
                )
            )
            .values(is_default=False, updated_at=utcnow())
        )

    def _to_pipeline_read(self, pipeline: CRMPipeline, deal_count: int) -> PipelineRead:
        stages = sorted(pipeline.stages, key=lambda item: (item.position, str(item.id)))
        return PipelineRead.model_validate(
            {
                "id": pipeline.id,
                "organization_id": pipeline.organization_id,
                "name": pipeline.name,
                "is_default": pipeline.is_default,
                "stages": [PipelineStageRead.model_validate(stage).model_dump(mode="json") for stage in stages],
                "deal_count": deal_count,
                "created_at": pipeline.created_at,
            }
        )


class DealService:
    entity_type = "crm.deal"

    def __init__(self) -> None:
        self.pipeline_service = PipelineService()

    def create_deal(self, session: Session, actor_user: ActorUser, dto: DealCreate) -> DealRead:
        organization_id = _require_organization(actor_user)
        pipeline, stage = self._resolve_create_stage(session, organization_id, dto)
        if dto.contact_id is not None:
            self._ensure_contact(session, organization_id, dto.contact_id)

        now = utcnow()
        actor_uuid = actor_user.user_uuid
        deal = CRMDeal(
            organization_id=organization_id,
            title=dto.title.strip(),
            value=dto.value,
            currency=dto.currency,
            status=dto.status,
            probability=dto.probability,
            expected_close_date=dto.expected_close_date,
            notes=dto.notes,
            contact_id=dto.contact_id,
            pipeline_id=pipeline.id,
            stage_id=stage.id,
            owner_user_id=dto.owner_user_id or actor_uuid,
            creator_user_id=actor_uuid,
            stage_entered_at=now,
            stage_sequence=1,
        )
        session.add(deal)
        session.flush()
        session.add(
            CRMDealStageHistory(
                deal_id=deal.id,
                from_stage_id=None,
                to_stage_id=stage.id,
                stage_sequence=1,
                entered_at=now,
                changed_by_user_id=actor_uuid,
            )
        )

        created = self._to_read(deal)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(deal.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            organization_id=str(organization_id),
        )
        session.commit()

        events.publish(
            events.build_envelope(
                "crm.deal.created",
                actor_user_id=actor_user.user_id,
                organization_id=organization_id,
                payload={"deal_id": str(created.id), "pipeline_id": str(created.pipeline_id)},
            )
        )
        events.publish(self._stage_changed_envelope(actor_user, created, from_stage_id=None))
        return self._to_read_model(session, organization_id, created.id)

    def list_deals(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        status_filter: str | None = None,
        pipeline_id: uuid.UUID | None = None,
    ) -> list[DealRead]:
        organization_id = _require_organization(actor_user)
        stmt = select(CRMDeal).where(CRMDeal.organization_id == organization_id)
        if status_filter:
            stmt = stmt.where(CRMDeal.status == status_filter)
        if pipeline_id is not None:
            stmt = stmt.where(CRMDeal.pipeline_id == pipeline_id)
        deals = session.scalars(stmt.order_by(CRMDeal.created_at.desc(), CRMDeal.id.desc())).all()
        return [self._to_read(deal) for deal in deals]

    def get_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> DealRead:
        organization_id = _require_organization(actor_user)
        return self._to_read(self._get_deal(session, organization_id, deal_id))

    def update_deal(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        dto: DealUpdate,
    ) -> DealRead:
        organization_id = _require_organization(actor_user)
        deal = self._get_deal(session, organization_id, deal_id)

        payload = dto.model_dump(exclude_unset=True)
        payload.pop("row_version", None)
        target_stage_id = payload.pop("stage_id", None)
        if target_stage_id == deal.stage_id:
            target_stage_id = None
        if not payload and target_stage_id is None:
            return self._to_read(deal)

        if payload.get("contact_id") is not None:
            self._ensure_contact(session, organization_id, payload["contact_id"])
        target_stage = None
        if target_stage_id is not None:
            target_stage = self._resolve_transition_stage(session, organization_id, deal, target_stage_id)

        before = self._to_read(deal).model_dump(mode="json")
        expected_row_version = dto.row_version
        if payload:
            payload["updated_at"] = utcnow()
            payload["row_version"] = CRMDeal.row_version + 1
            result = session.execute(
                update(CRMDeal)
                .where(and_(CRMDeal.id == deal.id, CRMDeal.row_version == expected_row_version))
                .values(**payload)
            )
            if result.rowcount == 0:
                session.rollback()
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")
            expected_row_version += 1
            session.refresh(deal)

        stage_changed_envelope = None
        if target_stage is not None:
            from_stage_id = deal.stage_id
            self._transition(session, actor_user, deal, target_stage, expected_row_version)
            stage_changed_envelope = self._stage_changed_envelope(actor_user, self._to_read(deal), from_stage_id)

        updated = self._to_read(deal)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(deal.id),
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            organization_id=str(organization_id),
        )
        session.commit()

        events.publish(
            events.build_envelope(
                "crm.deal.updated",
                actor_user_id=actor_user.user_id,
                organization_id=organization_id,
                payload={"deal_id": str(updated.id), "row_version": updated.row_version},
            )
        )
        if stage_changed_envelope is not None:
            events.publish(stage_changed_envelope)
        return self._to_read_model(session, organization_id, deal_id)

    def change_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        dto: DealStageChangeRequest,
    ) -> DealRead:
        organization_id = _require_organization(actor_user)
        deal = self._get_deal(session, organization_id, deal_id)
        if deal.stage_id == dto.stage_id:
            return self._to_read(deal)

        stage = self._resolve_transition_stage(session, organization_id, deal, dto.stage_id)
        before = self._to_read(deal).model_dump(mode="json")
        from_stage_id = deal.stage_id
        self._transition(session, actor_user, deal, stage, deal.row_version)

        updated = self._to_read(deal)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(deal.id),
            action="change_stage",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            organization_id=str(organization_id),
        )
        session.commit()
        events.publish(self._stage_changed_envelope(actor_user, updated, from_stage_id))
        return self._to_read_model(session, organization_id, deal_id)

    def delete_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> None:
        organization_id = _require_organization(actor_user)
        deal = self._get_deal(session, organization_id, deal_id)
        before = self._to_read(deal).model_dump(mode="json")
        session.delete(deal)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(deal_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
            organization_id=str(organization_id),
        )
        session.commit()
        events.publish(
            events.build_envelope(
                "crm.deal.deleted",
                actor_user_id=actor_user.user_id,
                organization_id=organization_id,
                payload={"deal_id": str(deal_id)},
            )
        )

    def _transition(
        self,
        session: Session,
        actor_user: ActorUser,
        deal: CRMDeal,
        stage: CRMPipelineStage,
        expected_row_version: int,
    ) -> None:
        now = utcnow()
        from_stage_id = deal.stage_id
        result = session.execute(
            update(CRMDeal)
            .where(and_(CRMDeal.id == deal.id, CRMDeal.row_version == expected_row_version))
            .values(
                stage_id=stage.id,
                stage_entered_at=now,
                stage_sequence=CRMDeal.stage_sequence + 1,
                updated_at=now,
                row_version=CRMDeal.row_version + 1,
            )
        )
        if result.rowcount == 0:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

        session.refresh(deal)
        session.add(
            CRMDealStageHistory(
                deal_id=deal.id,
                from_stage_id=from_stage_id,
                to_stage_id=stage.id,
                stage_sequence=deal.stage_sequence,
                entered_at=now,
                changed_by_user_id=actor_user.user_uuid,
            )
        )
        session.flush()

    def _stage_changed_envelope(
        self,
        actor_user: ActorUser,
        deal: DealRead,
        from_stage_id: uuid.UUID | None,
    ) -> dict[str, Any]:
        return events.build_envelope(
            "crm.deal.stage_changed",
            actor_user_id=actor_user.user_id,
            organization_id=deal.organization_id,
            payload={
                "deal_id": str(deal.id),
                "from_stage_id": str(from_stage_id) if from_stage_id is not None else None,
                "stage_id": str(deal.stage_id),
                "stage_sequence": deal.stage_sequence,
            },
        )

    def _resolve_create_stage(
        self,
        session: Session,
        organization_id: uuid.UUID,
        dto: DealCreate,
    ) -> tuple[CRMPipeline, CRMPipelineStage]:
        if dto.pipeline_id is not None:
            pipeline = session.scalar(
                select(CRMPipeline)
                .where(and_(CRMPipeline.id == dto.pipeline_id, CRMPipeline.organization_id == organization_id))
                .options(selectinload(CRMPipeline.stages))
            )
            if pipeline is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="pipeline not found")
        else:
            pipeline = self.pipeline_service.get_default_pipeline(session, organization_id)
            if pipeline is None:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="No pipeline found")

        stages = sorted(pipeline.stages, key=lambda item: item.position)
        if dto.stage_id is not None:
            for stage in stages:
                if stage.id == dto.stage_id:
                    return pipeline, stage
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="stage must belong to pipeline")
        if not stages:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="pipeline has no stages")
        return pipeline, stages[0]

    def _resolve_transition_stage(
        self,
        session: Session,
        organization_id: uuid.UUID,
        deal: CRMDeal,
        stage_id: uuid.UUID,
    ) -> CRMPipelineStage:
        stage = self.pipeline_service.get_stage(session, organization_id, stage_id)
        if stage.pipeline_id != deal.pipeline_id:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="stage must be in same pipeline")
        return stage

    def _ensure_contact(self, session: Session, organization_id: uuid.UUID, contact_id: uuid.UUID) -> None:
        contact = session.scalar(
            select(CRMContact.id).where(
                and_(CRMContact.id == contact_id, CRMContact.organization_id == organization_id)
            )
        )
        if contact is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="contact not found")

    def _get_deal(self, session: Session, organization_id: uuid.UUID, deal_id: uuid.UUID) -> CRMDeal:
        deal = session.scalar(
            select(CRMDeal).where(and_(CRMDeal.id == deal_id, CRMDeal.organization_id == organization_id))
        )
        if deal is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="deal not found")
        return deal

    def _to_read_model(self, session: Session, organization_id: uuid.UUID, deal_id: uuid.UUID) -> DealRead:
        return self._to_read(self._get_deal(session, organization_id, deal_id))

    def _to_read(self, deal: CRMDeal) -> DealRead:
        try:
            tags = load_custom_data(deal).get("tags") or []
        except ValueError:
            logger.warning("deal.custom_data_invalid", extra={"deal_id": str(deal.id)})
            tags = []
        if not isinstance(tags, list):
            tags = []
        return DealRead.model_validate(
            {
                "id": deal.id,
                "organization_id": deal.organization_id,
                "title": deal.title,
                "value": deal.value,
                "currency": deal.currency,
                "status": deal.status,
                "probability": deal.probability,
                "expected_close_date": deal.expected_close_date,
                "notes": deal.notes,
                "owner_user_id": deal.owner_user_id,
                "creator_user_id": deal.creator_user_id,
                "contact_id": deal.contact_id,
                "pipeline_id": deal.pipeline_id,
                "stage_id": deal.stage_id,
                "tags": [str(tag) for tag in tags],
                "stage_entered_at": deal.stage_entered_at,
                "stage_sequence": deal.stage_sequence,
                "row_version": deal.row_version,
                "created_at": deal.created_at,
                "updated_at": deal.updated_at,
            }
        )


class StageAutomationService:
    entity_type = "crm.stage_automation"

    def __init__(self) -> None:
        self.pipeline_service = PipelineService()

    def list_for_stage(self, session: Session, actor_user: ActorUser, stage_id: uuid.UUID) -> list[StageAutomationRead]:
        organization_id = _require_organization(actor_user)
        stage = self.pipeline_service.get_stage(session, organization_id, stage_id)
        automations = session.scalars(
            select(CRMPipelineStageAutomation)
            .where(CRMPipelineStageAutomation.stage_id == stage.id)
            .order_by(CRMPipelineStageAutomation.created_at.asc())
        ).all()
        return [StageAutomationRead.model_validate(automation) for automation in automations]

    def create_automation(
        self,
        session: Session,
        actor_user: ActorUser,
        stage_id: uuid.UUID,
        dto: StageAutomationCreate,
    ) -> StageAutomationRead:
        organization_id = _require_organization(actor_user)
        stage = self.pipeline_service.get_stage(session, organization_id, stage_id)
        automation = CRMPipelineStageAutomation(
            organization_id=organization_id,
            stage_id=stage.id,
            trigger_type=dto.trigger_type,
            duration_minutes=dto.duration_minutes,
            actions_json=dto.actions_json,
            is_active=dto.is_active,
        )
        session.add(automation)
        session.flush()
        created = StageAutomationRead.model_validate(automation)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(automation.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            organization_id=str(organization_id),
        )
        session.commit()
        return created

    def update_automation(
        self,
        session: Session,
        actor_user: ActorUser,
        automation_id: uuid.UUID,
        dto: StageAutomationUpdate,
    ) -> StageAutomationRead:
        organization_id = _require_organization(actor_user)
        automation = session.scalar(
            select(CRMPipelineStageAutomation).where(
                and_(
                    CRMPipelineStageAutomation.id == automation_id,
                    CRMPipelineStageAutomation.organization_id == organization_id,
                )
            )
        )
        if automation is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="automation not found")

        before = StageAutomationRead.model_validate(automation).model_dump(mode="json")
        changes = dto.model_dump(exclude_unset=True)
        if changes.get("actions_json") is None:
            changes.pop("actions_json", None)
        if changes.get("is_active") is None:
            changes.pop("is_active", None)
        for key, value in changes.items():
            setattr(automation, key, value)
        if automation.trigger_type == "on_duration" and automation.duration_minutes is None:
            session.rollback()
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="duration_minutes is required for on_duration automations",
            )

        session.flush()
        updated = StageAutomationRead.model_validate(automation)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(automation.id),
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            organization_id=str(organization_id),
        )
        session.commit()
        return updated


class AutomationRuleService:
    entity_type = "crm.automation_rule"

    def list_rules(self, session: Session, actor_user: ActorUser) -> list[AutomationRuleRead]:
        organization_id = _require_organization(actor_user)
        rules = session.scalars(
            select(CRMAutomationRule)
            .where(CRMAutomationRule.organization_id == organization_id)
            .order_by(CRMAutomationRule.created_at.asc())
        ).all()
        return [AutomationRuleRead.model_validate(rule) for rule in rules]

    def create_rule(self, session: Session, actor_user: ActorUser, dto: AutomationRuleCreate) -> AutomationRuleRead:
        organization_id = _require_organization(actor_user)
        rule = CRMAutomationRule(
            organization_id=organization_id,
            name=dto.name.strip(),
            description=dto.description,
            trigger=dto.trigger,
            trigger_config_json=dto.trigger_config_json,
            actions_json=dto.actions_json,
            is_active=dto.is_active,
        )
        session.add(rule)
        session.flush()
        created = AutomationRuleRead.model_validate(rule)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            organization_id=str(organization_id),
        )
        session.commit()
        return created


class TaskService:
    def list_tasks(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        deal_id: uuid.UUID | None = None,
        assignee_user_id: uuid.UUID | None = None,
    ) -> list[TaskRead]:
        organization_id = _require_organization(actor_user)
        stmt = select(CRMTask).where(CRMTask.organization_id == organization_id)
        if deal_id is not None:
            stmt = stmt.where(CRMTask.deal_id == deal_id)
        if assignee_user_id is not None:
            stmt = stmt.where(CRMTask.assignee_user_id == assignee_user_id)
        tasks = session.scalars(stmt.order_by(CRMTask.created_at.asc(), CRMTask.id.asc())).all()
        return [TaskRead.model_validate(task) for task in tasks]


class NotificationService:
    def list_for_user(self, session: Session, actor_user: ActorUser, *, unread_only: bool = False) -> list[NotificationRead]:
        organization_id = _require_organization(actor_user)
        stmt = select(CRMNotification).where(
            and_(
                CRMNotification.organization_id == organization_id,
                CRMNotification.user_id == actor_user.user_uuid,
            )
        )
        if unread_only:
            stmt = stmt.where(CRMNotification.is_read.is_(False))
        notifications = session.scalars(stmt.order_by(CRMNotification.created_at.desc())).all()
        return [NotificationRead.model_validate(notification) for notification in notifications]
