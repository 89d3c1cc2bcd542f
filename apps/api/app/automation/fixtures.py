from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from app.core.errors import UnknownTriggerTypeError


FixtureGenerator = Callable[[datetime, dict[str, Any]], dict[str, Any]]

_USER = {"id": "user-456", "name": "Janar Kuusk", "email": "janar@example.com"}
_EMAIL = {
    "id": "email-123",
    "to": "john.smith@techcorp.com",
    "subject": "Enterprise Software Package Proposal",
    "deal_id": "deal-123",
    "contact_id": "contact-123",
}


def _configured(config: dict[str, Any], key: str, fallback: Any) -> Any:
    value = config.get(key)
    if value in (None, "", "any"):
        return fallback
    return value


def _deal(probability: int, **extra: Any) -> dict[str, Any]:
    return {
        "id": "deal-123",
        "title": "Enterprise Software Package",
        "company": "TechCorp Inc.",
        "value": 75000,
        "contact": "John Smith",
        "owner": "current_user",
        "probability": probability,
        **extra,
    }


def _task(**extra: Any) -> dict[str, Any]:
    return {
        "id": "task-123",
        "title": "Follow up with TechCorp",
        "description": "Send proposal follow-up email",
        "type": "follow-up",
        "priority": "high",
        "assigned_to": "user-456",
        **extra,
    }


def _deal_stage_changed(now: datetime, config: dict[str, Any]) -> dict[str, Any]:
    stage = {
        "previous": _configured(config, "from_stage", "negotiation"),
        "current": _configured(config, "to_stage", "closed-won"),
    }
    return {"deal": _deal(100, stage=stage), "user": dict(_USER), "timestamp": now.isoformat()}


def _deal_created(now: datetime, config: dict[str, Any]) -> dict[str, Any]:
    return {
        "deal": _deal(25, stage_id="qualified", isNew=True),
        "user": dict(_USER),
        "timestamp": now.isoformat(),
    }


def _contact_created(now: datetime, config: dict[str, Any]) -> dict[str, Any]:
    contact = {
        "id": "contact-123",
        "name": "John Smith",
        "email": "john.smith@techcorp.com",
        "company": "TechCorp Inc.",
        "position": "CTO",
        "tags": ["enterprise"],
        "isNew": True,
    }
    return {"contact": contact, "user": dict(_USER), "timestamp": now.isoformat()}


def _task_deadline_missed(now: datetime, config: dict[str, Any]) -> dict[str, Any]:
    task = _task(due_date=(now - timedelta(days=1)).date().isoformat(), status="overdue", completed=False)
    return {"task": task, "user": dict(_USER), "timestamp": now.isoformat()}


def _task_completed(now: datetime, config: dict[str, Any]) -> dict[str, Any]:
    task = _task(
        due_date=now.date().isoformat(),
        status="completed",
        completed=True,
        completed_at=now.isoformat(),
        completed_by="user-456",
    )
    return {"task": task, "user": dict(_USER), "timestamp": now.isoformat()}


def _form_submitted(now: datetime, config: dict[str, Any]) -> dict[str, Any]:
    form = {
        "id": _configured(config, "form_id", "form-123"),
        "name": "Contact Form",
        "data": {
            "name": "John Smith",
            "email": "john.smith@techcorp.com",
            "company": "TechCorp Inc.",
            "message": "I'm interested in your enterprise package",
        },
    }
    return {"form": form, "user": dict(_USER), "timestamp": now.isoformat()}


def _email_opened(now: datetime, config: dict[str, Any]) -> dict[str, Any]:
    email = {**_EMAIL, "status": "opened", "opened_at": now.isoformat()}
    return {"email": email, "timestamp": now.isoformat()}


def _email_clicked(now: datetime, config: dict[str, Any]) -> dict[str, Any]:
    url = "https://example.com/pricing"
    url_contains = config.get("url_contains")
    if url_contains and url_contains not in url:
        url = f"https://example.com/{url_contains}"
    event = {"id": "event-123", "type": "click", "timestamp": now.isoformat(), "metadata": {"url": url}}
    return {"email": dict(_EMAIL), "event": event, "timestamp": now.isoformat()}


def _webhook_received(now: datetime, config: dict[str, Any]) -> dict[str, Any]:
    webhook = {
        "id": "webhook-123",
        "source": _configured(config, "source", "stripe"),
        "event": "invoice.paid",
        "body": {"invoice_id": "inv-123", "amount": 110},
        "received_at": now.isoformat(),
    }
    return {"webhook": webhook, "timestamp": now.isoformat()}


def _scheduled_trigger(now: datetime, config: dict[str, Any]) -> dict[str, Any]:
    return {"timestamp": now.isoformat(), "scheduled": True}


def _api_call(now: datetime, config: dict[str, Any]) -> dict[str, Any]:
    request = {
        "endpoint": _configured(config, "endpoint", "/api/deals"),
        "method": "POST",
        "body": {"title": "Enterprise Software Package", "value": 75000},
    }
    return {"request": request, "user": dict(_USER), "timestamp": now.isoformat()}


def _database_change(now: datetime, config: dict[str, Any]) -> dict[str, Any]:
    change = {
        "table": _configured(config, "table", "crm_deal"),
        "operation": _configured(config, "operation", "update"),
        "record_id": "deal-123",
        "old": {"stage": "negotiation"},
        "new": {"stage": "closed-won"},
    }
    return {"change": change, "timestamp": now.isoformat()}


FIXTURE_GENERATORS: dict[str, FixtureGenerator] = {
    "deal_stage_changed": _deal_stage_changed,
    "deal_created": _deal_created,
    "contact_created": _contact_created,
    "task_deadline_missed": _task_deadline_missed,
    "task_completed": _task_completed,
    "form_submitted": _form_submitted,
    "email_opened": _email_opened,
    "email_clicked": _email_clicked,
    "webhook_received": _webhook_received,
    "scheduled_trigger": _scheduled_trigger,
    "api_call": _api_call,
    "database_change": _database_change,
}


def generate_trigger_payload(
    trigger_type: str,
    *,
    now: datetime | None = None,
    config: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Synthetic payload for dry-running a rule. A trigger config, when given, shapes the payload to match it."""
    generator = FIXTURE_GENERATORS.get(trigger_type)
    if generator is None:
        raise UnknownTriggerTypeError(trigger_type)
    return generator(now or datetime.now(timezone.utc), config or {})
