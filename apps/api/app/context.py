from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
automation_trigger_var: ContextVar[str | None] = ContextVar("automation_trigger", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_automation_trigger(value: str | None) -> Token[str | None]:
    return automation_trigger_var.set(value)


def reset_automation_trigger(token: Token[str | None]) -> None:
    automation_trigger_var.reset(token)


def get_automation_trigger() -> str | None:
    return automation_trigger_var.get()


def get_log_context() -> dict[str, str | None]:
    return {"correlation_id": get_correlation_id(), "automation_trigger": get_automation_trigger()}
