from __future__ import annotations

import uuid
from dataclasses import dataclass, asdict
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
from app.crm.automation import duration_sweeper
from app.crm.schemas import (
    AutomationRuleCreate,
    AutomationRuleRead,
    DealCreate,
    DealRead,
    DealStageChangeRequest,
    DealUpdate,
    IndustryApplyRequest,
    IndustryApplyResponse,
    IndustryTemplateSummary,
    NotificationRead,
    PipelineCreate,
    PipelineRead,
    PipelineStageCreate,
    PipelineStageRead,
    StageAutomationCreate,
    StageAutomationRead,
    StageAutomationUpdate,
    SweepResultRead,
    TaskRead,
)
from app.crm.service import (
    ActorUser,
    AutomationRuleService,
    DealService,
    NotificationService,
    PipelineService,
    StageAutomationService,
    TaskService,
)
from app.crm.templates import industry_template_service, list_templates

deals_router = APIRouter(prefix="/api/crm", tags=["crm.deals"])
pipelines_router = APIRouter(prefix="/api/crm", tags=["crm.pipelines"])
automations_router = APIRouter(prefix="/api/crm", tags=["crm.automations"])
tasks_router = APIRouter(prefix="/api/crm", tags=["crm.tasks"])
industry_router = APIRouter(prefix="/api/crm/industry", tags=["crm.industry"])
deal_service = DealService()
pipeline_service = PipelineService()
stage_automation_service = StageAutomationService()
automation_rule_service = AutomationRuleService()
task_service = TaskService()
notification_service = NotificationService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=asdict(payload))


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    organization_raw = auth_user.organization_id or request.headers.get("x-organization-id")
    organization_id: uuid.UUID | None = None
    if organization_raw:
        try:
            organization_id = uuid.UUID(organization_raw)
        except ValueError:
            organization_id = None

    normalized_roles = {str(role).lower() for role in auth_user.roles}
    return ActorUser(
        user_id=auth_user.sub,
        organization_id=organization_id,
        permissions=set(auth_user.roles),
        is_admin="admin" in normalized_roles or "system.admin" in normalized_roles,
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@deals_router.get("/deals", response_model=list[DealRead])
def list_deals(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    pipeline_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.list_deals(db, user, status_filter=status_filter, pipeline_id=pipeline_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.post("/deals", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return deal_service.create_deal(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.get("/deals/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.get_deal(db, user, deal_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.patch("/deals/{deal_id}", response_model=DealRead)
def update_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return deal_service.update_deal(db, user, deal_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.post("/deals/{deal_id}/stage", response_model=DealRead)
def change_deal_stage(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealStageChangeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return deal_service.change_stage(db, user, deal_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_change_stage_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.delete("/deals/{deal_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.deals.write")
        deal_service.delete_deal(db, user, deal_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.get("/pipelines", response_model=list[PipelineRead])
def list_pipelines(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return pipeline_service.list_pipelines(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.post("/pipelines", response_model=PipelineRead, status_code=status.HTTP_201_CREATED)
def create_pipeline(
    request: Request,
    dto: PipelineCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.create_pipeline(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.post(
    "/pipelines/{pipeline_id}/stages",
    response_model=PipelineStageRead,
    status_code=status.HTTP_201_CREATED,
)
def add_pipeline_stage(
    request: Request,
    pipeline_id: uuid.UUID,
    dto: PipelineStageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStageRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.add_stage(db, user, pipeline_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_stage_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@automations_router.get("/stages/{stage_id}/automations", response_model=list[StageAutomationRead])
def list_stage_automations(
    request: Request,
    stage_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageAutomationRead] | JSONResponse:
    try:
        require_permission(user, "crm.automations.read")
        return stage_automation_service.list_for_stage(db, user, stage_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_automation_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@automations_router.post(
    "/stages/{stage_id}/automations",
    response_model=StageAutomationRead,
    status_code=status.HTTP_201_CREATED,
)
def create_stage_automation(
    request: Request,
    stage_id: uuid.UUID,
    dto: StageAutomationCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageAutomationRead | JSONResponse:
    try:
        require_permission(user, "crm.automations.manage")
        return stage_automation_service.create_automation(db, user, stage_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_automation_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@automations_router.patch("/automations/{automation_id}", response_model=StageAutomationRead)
def update_stage_automation(
    request: Request,
    automation_id: uuid.UUID,
    dto: StageAutomationUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageAutomationRead | JSONResponse:
    try:
        require_permission(user, "crm.automations.manage")
        return stage_automation_service.update_automation(db, user, automation_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_automation_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@automations_router.get("/automation-rules", response_model=list[AutomationRuleRead])
def list_automation_rules(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AutomationRuleRead] | JSONResponse:
    try:
        require_permission(user, "crm.automations.read")
        return automation_rule_service.list_rules(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_automation_rule_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@automations_router.post(
    "/automation-rules",
    response_model=AutomationRuleRead,
    status_code=status.HTTP_201_CREATED,
)
def create_automation_rule(
    request: Request,
    dto: AutomationRuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        require_permission(user, "crm.automations.manage")
        return automation_rule_service.create_rule(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_automation_rule_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@automations_router.post("/automations/sweep", response_model=SweepResultRead)
def run_duration_sweep(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SweepResultRead | JSONResponse:
    try:
        require_permission(user, "crm.automations.execute")
        if user.organization_id is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="organization context required")
        result = duration_sweeper.sweep_duration_automations(db, organization_id=user.organization_id)
        return SweepResultRead.model_validate(asdict(result))
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_automation_sweep_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.get("/tasks", response_model=list[TaskRead])
def list_tasks(
    request: Request,
    deal_id: uuid.UUID | None = Query(default=None),
    assignee_user_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return task_service.list_tasks(db, user, deal_id=deal_id, assignee_user_id=assignee_user_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.get("/notifications", response_model=list[NotificationRead])
def list_notifications(
    request: Request,
    unread_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[NotificationRead] | JSONResponse:
    try:
        return notification_service.list_for_user(db, user, unread_only=unread_only)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_notification_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@industry_router.get("/templates", response_model=list[IndustryTemplateSummary])
def list_industry_templates(
    request: Request,
    user: ActorUser = Depends(get_current_user),
) -> list[IndustryTemplateSummary] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return list_templates()
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_industry_template_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@industry_router.post("/apply", response_model=IndustryApplyResponse)
def apply_industry_template(
    request: Request,
    dto: IndustryApplyRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> IndustryApplyResponse | JSONResponse:
    try:
        require_permission(user, "crm.templates.apply")
        return industry_template_service.apply_template(db, user, dto.industry_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_industry_apply_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
