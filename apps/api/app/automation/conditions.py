from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any

from app.automation import catalog
from app.automation.http import HttpSender, send_request
from app.automation.templating import render, resolve_path


_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_DECIMAL = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)$")
_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def _normalize(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, str) and _DECIMAL.match(value.strip()):
        return float(value)
    return value


def compare(operator: str, found: bool, actual: Any, expected: Any) -> bool:
    if operator == "exists":
        return found and actual not in (None, "", [], {})
    if not found:
        return False
    if operator == "contains":
        if isinstance(actual, str):
            return str(expected) in actual
        if isinstance(actual, (list, tuple, set)):
            return expected in actual
        return False

    left = _normalize(actual)
    right = _normalize(expected)
    if operator == "equals":
        return left == right
    if operator == "not_equals":
        return left != right
    if left is None or right is None:
        return False
    try:
        if operator == "greater_than":
            return left > right
        if operator == "less_than":
            return left < right
        if operator == "greater_or_equal":
            return left >= right
        if operator == "less_or_equal":
            return left <= right
    except TypeError:
        return False
    return False


def _parse_moment(raw: Any, fallback: datetime) -> datetime:
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, str) and raw:
        try:
            return datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return fallback
    return fallback


def _day_allowed(days: list[str], moment: datetime) -> bool:
    day_name = _WEEKDAYS[moment.weekday()]
    for entry in days:
        if entry == "any" or entry == day_name:
            return True
        if entry == "weekday" and moment.weekday() < 5:
            return True
        if entry == "weekend" and moment.weekday() >= 5:
            return True
    return False


def _within_window(current: time, start: time, end: time) -> bool:
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


@dataclass(slots=True)
class ConditionEvaluator:
    """Evaluates typed conditions against a trigger payload. Errors propagate to the caller."""

    http_send: HttpSender = send_request
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(timezone.utc))

    def evaluate(self, condition: Any, payload: dict[str, Any]) -> bool:
        handler = self.handlers().get(condition.type)
        if handler is None:
            raise ValueError(f"no evaluator for condition type {condition.type}")
        return handler(condition.config, payload)

    def handlers(self) -> dict[str, Callable[[Any, dict[str, Any]], bool]]:
        return {
            "deal_value": self._threshold,
            "deal_probability": self._threshold,
            "task_priority": self._task_priority,
            "contact_tags": self._contact_tags,
            "time_based": self._time_based,
            "custom_field": self._custom_field,
            "complex_logic": self._complex_logic,
            "data_validation": self._data_validation,
            "external_api_check": self._external_api_check,
            "machine_learning": self._machine_learning,
        }

    def _threshold(self, config: catalog.ThresholdConfig, payload: dict[str, Any]) -> bool:
        found, actual = resolve_path(payload, config.field)
        return compare(config.operator, found, actual, config.value)

    def _task_priority(self, config: catalog.TaskPriorityConfig, payload: dict[str, Any]) -> bool:
        found, actual = resolve_path(payload, config.field)
        return found and str(actual).lower() == config.priority

    def _contact_tags(self, config: catalog.ContactTagsConfig, payload: dict[str, Any]) -> bool:
        found, actual = resolve_path(payload, config.field)
        present = {str(tag).lower() for tag in actual} if found and isinstance(actual, list) else set()
        wanted = {tag.lower() for tag in config.tags}
        if config.operator == "contains_all":
            return wanted <= present
        if config.operator == "contains_none":
            return not (wanted & present)
        return bool(wanted & present)

    def _time_based(self, config: catalog.TimeBasedConfig, payload: dict[str, Any]) -> bool:
        _, raw = resolve_path(payload, config.timestamp_field)
        moment = _parse_moment(raw, self.clock())
        if not _day_allowed(config.days, moment):
            return False
        start = time.fromisoformat(config.time_from)
        end = time.fromisoformat(config.time_to)
        return _within_window(moment.time().replace(second=0, microsecond=0), start, end)

    def _custom_field(self, config: catalog.CustomFieldConfig, payload: dict[str, Any]) -> bool:
        found, actual = resolve_path(payload, config.field)
        return compare(config.operator, found, actual, config.value)

    def _complex_logic(self, config: catalog.ComplexLogicConfig, payload: dict[str, Any]) -> bool:
        if config.logic == "not":
            return not self.evaluate(config.conditions[0], payload)
        if config.logic == "or":
            return any(self.evaluate(item, payload) for item in config.conditions)
        return all(self.evaluate(item, payload) for item in config.conditions)

    def _data_validation(self, config: catalog.DataValidationConfig, payload: dict[str, Any]) -> bool:
        found, actual = resolve_path(payload, config.field)
        if not found or actual in (None, ""):
            return False
        if config.rule == "required":
            return True
        if config.rule == "email":
            return isinstance(actual, str) and bool(_EMAIL.match(actual))
        if config.rule == "numeric":
            if isinstance(actual, bool):
                return False
            return isinstance(_normalize(actual), (int, float))
        return bool(re.search(config.pattern or "", str(actual)))

    def _external_api_check(self, config: catalog.ExternalApiCheckConfig, payload: dict[str, Any]) -> bool:
        status, _ = self.http_send(config.method, render(config.url, payload), headers={}, body=None)
        return status == config.expected_status

    def _machine_learning(self, config: catalog.MachineLearningConfig, payload: dict[str, Any]) -> bool:
        found, score = resolve_path(payload, config.field)
        return compare(config.operator, found, score, config.threshold)
