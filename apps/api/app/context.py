from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
automation_depth_var: ContextVar[int | None] = ContextVar("automation_depth", default=None)
saga_name_var: ContextVar[str | None] = ContextVar("saga_name", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_automation_depth(value: int | None) -> Token[int | None]:
    return automation_depth_var.set(value)


def reset_automation_depth(token: Token[int | None]) -> None:
    automation_depth_var.reset(token)


def get_automation_depth() -> int:
    return automation_depth_var.get() or 0


def set_saga_name(value: str | None) -> Token[str | None]:
    return saga_name_var.set(value)


def reset_saga_name(token: Token[str | None]) -> None:
    saga_name_var.reset(token)


def get_saga_name() -> str | None:
    return saga_name_var.get()


def get_log_context() -> dict[str, str | None]:
    return {"correlation_id": get_correlation_id(), "saga": get_saga_name()}
