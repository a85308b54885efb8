from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from app.context import get_automation_trigger, get_correlation_id

audit_entries: list[dict[str, Any]] = []


def _changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    if before is None or after is None:
        return sorted((before or after or {}).keys())
    keys = before.keys() | after.keys()
    return sorted(key for key in keys if before.get(key) != after.get(key))


def record(
    *,
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
    organization_id: str | None = None,
) -> dict[str, Any]:
    """Append an audit entry for a CRM mutation.

    Writes made while an automation is running are tagged with its trigger
    (``on_enter``/``on_duration``) as ``source``; everything else is ``api``.
    """
    entry = {
        "id": str(uuid.uuid4()),
        "organization_id": organization_id,
        "actor_user_id": actor_user_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "changed_fields": _changed_fields(before, after),
        "before": before,
        "after": after,
        "source": get_automation_trigger() or "api",
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    return entry
