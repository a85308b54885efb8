"""create crm stage automations, runs, cursors, sweep locks, tasks and notifications

Revision ID: 202610180002
Revises: 202610180001
Create Date: 2026-10-18 00:10:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180002"
down_revision: str | None = "202610180001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_pipeline_stage_automation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("stage_id", sa.Uuid(), nullable=False),
        sa.Column("trigger_type", sa.String(length=32), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("actions_json", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["stage_id"], ["crm_pipeline_stage.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_stage_automation_trigger_active",
        "crm_pipeline_stage_automation",
        ["stage_id", "trigger_type", "is_active"],
        unique=False,
    )

    op.create_table(
        "crm_automation_rule",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("trigger", sa.String(length=64), nullable=False),
        sa.Column("trigger_config_json", sa.JSON(), nullable=False),
        sa.Column("actions_json", sa.JSON(), nullable=False),
        sa.Column("industry_type", sa.String(length=64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_automation_rule_organization_active",
        "crm_automation_rule",
        ["organization_id", "is_active"],
        unique=False,
    )

    op.create_table(
        "crm_automation_run",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("automation_id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=False),
        sa.Column("stage_sequence", sa.Integer(), nullable=False),
        sa.Column("trigger_type", sa.String(length=32), nullable=False),
        sa.Column("fired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actions_succeeded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("actions_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("actions_skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["automation_id"], ["crm_pipeline_stage_automation.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["deal_id"], ["crm_deal.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("automation_id", "deal_id", "stage_sequence", name="uq_crm_automation_run_visit"),
    )
    op.create_index("ix_crm_automation_run_deal", "crm_automation_run", ["deal_id", "automation_id"], unique=False)

    op.create_table(
        "crm_assignment_cursor",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("role_name", sa.String(length=64), nullable=False),
        sa.Column("last_user_id", sa.Uuid(), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("organization_id", "role_name", name="uq_crm_assignment_cursor_role"),
    )

    op.create_table(
        "crm_sweep_lock",
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("holder", sa.String(length=64), nullable=False),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("organization_id"),
    )

    op.create_table(
        "crm_task",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="todo"),
        sa.Column("priority", sa.String(length=32), nullable=False, server_default="medium"),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("creator_user_id", sa.Uuid(), nullable=False),
        sa.Column("assignee_user_id", sa.Uuid(), nullable=True),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("deal_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_task_assignee_status_due",
        "crm_task",
        ["assignee_user_id", "status", "due_at"],
        unique=False,
    )
    op.create_index("ix_crm_task_deal", "crm_task", ["deal_id"], unique=False)

    op.create_table(
        "crm_notification",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False, server_default="info"),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("deal_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_notification_user_read_created",
        "crm_notification",
        ["user_id", "is_read", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crm_notification_user_read_created", table_name="crm_notification")
    op.drop_table("crm_notification")

    op.drop_index("ix_crm_task_deal", table_name="crm_task")
    op.drop_index("ix_crm_task_assignee_status_due", table_name="crm_task")
    op.drop_table("crm_task")

    op.drop_table("crm_sweep_lock")
    op.drop_table("crm_assignment_cursor")

    op.drop_index("ix_crm_automation_run_deal", table_name="crm_automation_run")
    op.drop_table("crm_automation_run")

    op.drop_index("ix_crm_automation_rule_organization_active", table_name="crm_automation_rule")
    op.drop_table("crm_automation_rule")

    op.drop_index("ix_crm_stage_automation_trigger_active", table_name="crm_pipeline_stage_automation")
    op.drop_table("crm_pipeline_stage_automation")
