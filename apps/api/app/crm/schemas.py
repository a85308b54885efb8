from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


DealStatus = Literal["open", "won", "lost"]
TriggerType = Literal["on_enter", "on_duration", "on_exit"]


class CreateTaskConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = Field(default="Follow up required", min_length=1)
    description: str | None = None
    priority: str = Field(default="medium", min_length=1)
    due_in_hours: float | None = Field(default=None, alias="dueInHours", ge=0)
    assign_to_owner: bool = Field(default=False, alias="assignToOwner")


class SendNotificationConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = Field(default="Deal Update", min_length=1)
    message: str | None = None
    type: str = Field(default="info", min_length=1)


class AssignUserConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    role: str | None = None
    strategy: str = "round_robin"


class UpdateFieldConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    field: str = Field(min_length=1)
    value: Any = None


class SendEmailConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    to: str | None = None
    subject: str | None = None
    template: str | None = None


class CreateTaskAction(BaseModel):
    type: Literal["create_task"]
    config: CreateTaskConfig = Field(default_factory=CreateTaskConfig)


class SendNotificationAction(BaseModel):
    type: Literal["send_notification"]
    config: SendNotificationConfig = Field(default_factory=SendNotificationConfig)


class AssignUserAction(BaseModel):
    type: Literal["assign_user"]
    config: AssignUserConfig = Field(default_factory=AssignUserConfig)


class UpdateFieldAction(BaseModel):
    type: Literal["update_field"]
    config: UpdateFieldConfig


class SendEmailAction(BaseModel):
    type: Literal["send_email"]
    config: SendEmailConfig = Field(default_factory=SendEmailConfig)


AutomationAction = Annotated[
    CreateTaskAction | SendNotificationAction | AssignUserAction | UpdateFieldAction | SendEmailAction,
    Field(discriminator="type"),
]

ACTION_TYPES = frozenset({"create_task", "send_notification", "assign_user", "update_field", "send_email"})

automation_action_adapter: TypeAdapter[Any] = TypeAdapter(AutomationAction)
_automation_action_list_adapter: TypeAdapter[Any] = TypeAdapter(list[AutomationAction])


def serialize_actions(actions: list[Any]) -> list[dict[str, Any]]:
    return [action.model_dump(mode="json", by_alias=True, exclude_none=True) for action in actions]


def normalize_actions(value: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return serialize_actions(_automation_action_list_adapter.validate_python(value))


class StageAutomationCreate(BaseModel):
    trigger_type: TriggerType
    duration_minutes: int | None = Field(default=None, ge=1)
    actions_json: list[dict[str, Any]]
    is_active: bool = True

    @model_validator(mode="after")
    def validate_automation(self) -> "StageAutomationCreate":
        if self.trigger_type == "on_duration" and self.duration_minutes is None:
            raise ValueError("duration_minutes is required for on_duration automations")
        self.actions_json = normalize_actions(self.actions_json)
        return self


class StageAutomationUpdate(BaseModel):
    duration_minutes: int | None = Field(default=None, ge=1)
    actions_json: list[dict[str, Any]] | None = None
    is_active: bool | None = None

    @model_validator(mode="after")
    def validate_automation(self) -> "StageAutomationUpdate":
        if self.actions_json is not None:
            self.actions_json = normalize_actions(self.actions_json)
        return self


class StageAutomationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    stage_id: UUID
    trigger_type: str
    duration_minutes: int | None
    actions_json: list[dict[str, Any]]
    is_active: bool
    created_at: datetime
    updated_at: datetime


class AutomationRuleCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    trigger: str = Field(min_length=1)
    trigger_config_json: dict[str, Any] = Field(default_factory=dict)
    actions_json: list[dict[str, Any]]
    is_active: bool = True

    @model_validator(mode="after")
    def validate_actions(self) -> "AutomationRuleCreate":
        self.actions_json = normalize_actions(self.actions_json)
        return self


class AutomationRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    name: str
    description: str | None
    trigger: str
    trigger_config_json: dict[str, Any]
    actions_json: list[dict[str, Any]]
    industry_type: str | None
    is_active: bool
    created_at: datetime


class PipelineCreate(BaseModel):
    name: str = Field(min_length=1)
    is_default: bool = False


class PipelineStageCreate(BaseModel):
    name: str = Field(min_length=1)
    position: int = Field(ge=1)
    color: str | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    description: str | None = None
    intent: str | None = None
    required_fields: list[str] = Field(default_factory=list)
    sub_statuses: list[str] = Field(default_factory=list)
    failure_signals: list[str] = Field(default_factory=list)


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    name: str
    position: int
    color: str | None
    probability: int | None
    description: str | None
    intent: str | None
    required_fields: list[str] | None
    sub_statuses: list[str] | None
    failure_signals: list[str] | None


class PipelineRead(BaseModel):
    id: UUID
    organization_id: UUID
    name: str
    is_default: bool
    stages: list[PipelineStageRead] = Field(default_factory=list)
    deal_count: int = 0
    created_at: datetime


class DealCreate(BaseModel):
    title: str = Field(min_length=1)
    value: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = "USD"
    status: DealStatus = "open"
    probability: int = Field(default=50, ge=0, le=100)
    expected_close_date: date | None = None
    notes: str | None = None
    contact_id: UUID | None = None
    pipeline_id: UUID | None = None
    stage_id: UUID | None = None
    owner_user_id: UUID | None = None


class DealUpdate(BaseModel):
    row_version: int = Field(ge=1)
    title: str | None = Field(default=None, min_length=1)
    value: Decimal | None = Field(default=None, ge=0)
    status: DealStatus | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    notes: str | None = None
    contact_id: UUID | None = None
    stage_id: UUID | None = None
    owner_user_id: UUID | None = None


class DealStageChangeRequest(BaseModel):
    stage_id: UUID


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    title: str
    value: Decimal
    currency: str
    status: str
    probability: int
    expected_close_date: date | None
    notes: str | None
    owner_user_id: UUID | None
    creator_user_id: UUID
    contact_id: UUID | None
    pipeline_id: UUID
    stage_id: UUID
    tags: list[str] = Field(default_factory=list)
    stage_entered_at: datetime
    stage_sequence: int
    row_version: int
    created_at: datetime
    updated_at: datetime


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str | None
    status: str
    priority: str
    due_at: datetime | None
    creator_user_id: UUID
    assignee_user_id: UUID | None
    contact_id: UUID | None
    deal_id: UUID | None
    created_at: datetime


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    title: str
    message: str
    type: str
    is_read: bool
    deal_id: UUID | None
    created_at: datetime


class SweepResultRead(BaseModel):
    organizations_swept: int
    organizations_locked: int
    deals_checked: int
    automations_fired: int
    automations_already_fired: int
    cancelled: bool


class IndustryTemplateSummary(BaseModel):
    id: str
    name: str
    description: str
    stage_count: int
    automation_count: int


class IndustryApplyRequest(BaseModel):
    industry_id: str = Field(min_length=1, alias="industryId")

    model_config = ConfigDict(populate_by_name=True)


class IndustryApplyResponse(BaseModel):
    success: bool
    message: str
    pipeline_id: UUID
