from __future__ import annotations

import json
import re
from datetime import date, timedelta
from typing import Any


_PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")
_SINGLE_PLACEHOLDER = re.compile(r"^\{\{([^}]+)\}\}$")
_IN_DAYS = re.compile(r"^in_(\d+)_days?$")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def resolve_path(data: Any, path: str) -> tuple[bool, Any]:
    current: Any = data
    for segment in path.strip().split("."):
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            return False, None
    return True, current


def set_path(data: dict[str, Any], path: str, value: Any) -> None:
    segments = path.strip().split(".")
    current = data
    for segment in segments[:-1]:
        child = current.get(segment)
        if not isinstance(child, dict):
            child = {}
            current[segment] = child
        current = child
    current[segments[-1]] = value


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def render(template: str | None, data: dict[str, Any]) -> str:
    """Replace `{{path.to.value}}` placeholders; unresolved placeholders stay verbatim."""
    if not template:
        return ""

    def _replace(match: re.Match[str]) -> str:
        found, value = resolve_path(data, match.group(1))
        if not found or value is None:
            return match.group(0)
        return _stringify(value)

    return _PLACEHOLDER.sub(_replace, template)


def render_value(value: Any, data: dict[str, Any]) -> Any:
    """Render templates inside nested config values.

    A string that is exactly one placeholder keeps the resolved value's type, so
    `{"value": "{{deal.value}}"}` yields a number rather than its text.
    """
    if isinstance(value, str):
        single = _SINGLE_PLACEHOLDER.match(value)
        if single:
            found, resolved = resolve_path(data, single.group(1))
            if found and resolved is not None:
                return resolved
            return value
        return render(value, data)
    if isinstance(value, dict):
        return {key: render_value(item, data) for key, item in value.items()}
    if isinstance(value, list):
        return [render_value(item, data) for item in value]
    return value


def resolve_relative_date(value: str | None, *, today: date) -> date:
    """Turn `today`, `tomorrow`, `in_N_days` or an ISO date into a date. Anything else means today."""
    if not value:
        return today
    text = value.strip().lower()
    if text == "today":
        return today
    if text == "tomorrow":
        return today + timedelta(days=1)
    in_days = _IN_DAYS.match(text)
    if in_days:
        return today + timedelta(days=int(in_days.group(1)))
    if _ISO_DATE.match(text):
        try:
            return date.fromisoformat(text)
        except ValueError:
            return today
    return today
