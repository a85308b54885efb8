from __future__ import annotations

import logging
import uuid
from dataclasses import asdict
from typing import Any

from sqlalchemy import select

from app.core.celery_app import celery_app
from app.core.config import get_settings
from app.core.database import SessionLocal
from app.crm.automation import duration_sweeper, process_organization_automations
from app.crm.models import CRMAutomationRule
from app.logging import configure_logging
from app.otel import setup_otel


configure_logging()
logger = logging.getLogger("app.tasks")

if get_settings().otel_enabled:
    setup_otel("worker", True)


@celery_app.task(name="app.tasks.sweep_duration_automations")
def sweep_duration_automations(organization_id: str | None = None) -> dict[str, Any]:
    if not get_settings().automations_enabled:
        logger.info("automation.sweep_disabled")
        return {}

    session = SessionLocal()
    try:
        result = duration_sweeper.sweep_duration_automations(
            session,
            organization_id=uuid.UUID(organization_id) if organization_id else None,
        )
    finally:
        session.close()
    return asdict(result)


@celery_app.task(name="app.tasks.process_organization_automations")
def process_all_organization_automations() -> int:
    session = SessionLocal()
    try:
        organization_ids = session.scalars(
            select(CRMAutomationRule.organization_id).where(CRMAutomationRule.is_active.is_(True)).distinct()
        ).all()
        return sum(process_organization_automations(session, organization_id) for organization_id in organization_ids)
    finally:
        session.close()
