from __future__ import annotations

import logging
import time as time_module
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import inspect
from sqlalchemy.orm import Session

from app.automation import catalog
from app.automation.conditions import ConditionEvaluator
from app.automation.http import HttpSender, send_request
from app.automation.templating import render, render_value, resolve_path, resolve_relative_date, set_path
from app.core.config import get_settings
from app.core.errors import ExternalCallError, NotFoundError, RuleValidationError
from app.crm.models import (
    CRMCalendarEvent,
    CRMCompany,
    CRMContact,
    CRMDeal,
    CRMLead,
    CRMNote,
    CRMNotificationIntent,
    CRMTask,
)
from app.otel import engine_span


logger = logging.getLogger("app.automation.actions")

RECORD_MODELS: dict[str, type[Any]] = {
    "deal": CRMDeal,
    "contact": CRMContact,
    "lead": CRMLead,
    "company": CRMCompany,
    "task": CRMTask,
}


@dataclass
class RunContext:
    """Working state of one rule invocation; actions may write derived values into `payload`."""

    payload: dict[str, Any]
    now: datetime
    actor_user_id: str | None = None
    emitted: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    @property
    def today(self) -> date:
        return self.now.date()


@dataclass(slots=True)
class ActionExecutor:
    http_send: HttpSender = send_request
    sleep: Callable[[float], None] = time_module.sleep
    conditions: ConditionEvaluator = field(default_factory=ConditionEvaluator)

    def execute(self, session: Session, action: Any, run: RunContext) -> dict[str, Any]:
        """Run one action inside the caller's transaction. Flushes, never commits."""
        handler = self.handlers().get(action.type)
        if handler is None:
            raise RuleValidationError(f"no handler for action type {action.type}", details={"action_type": action.type})
        with engine_span("app.automation", f"automation.action.{action.type}", action_type=action.type):
            return handler(session, action.config, run)

    def handlers(self) -> dict[str, Callable[[Session, Any, RunContext], dict[str, Any]]]:
        return {
            "send_email": self._send_email,
            "create_task": self._create_task,
            "update_record": self._update_record,
            "add_note": self._add_note,
            "send_notification": self._send_notification,
            "create_calendar_event": self._create_calendar_event,
            "webhook_call": self._webhook_call,
            "api_integration": self._api_integration,
            "data_transformation": self._data_transformation,
            "conditional_action": self._conditional_action,
            "delay_action": self._delay_action,
            "batch_processing": self._batch_processing,
            "ai_action": self._ai_action,
        }

    def _send_email(self, session: Session, config: catalog.SendEmailConfig, run: RunContext) -> dict[str, Any]:
        to = render(config.to, run.payload).strip()
        if not to or "{{" in to:
            raise RuleValidationError("email recipient could not be resolved", details={"to": config.to})
        intent = CRMNotificationIntent(
            channel="email",
            recipient_type="contact",
            recipient=to,
            subject=render(config.subject, run.payload),
            body=render(config.body, run.payload),
            template_id=config.template_id,
        )
        session.add(intent)
        session.flush()
        return {"notification_id": str(intent.id), "channel": "email", "to": to}

    def _create_task(self, session: Session, config: catalog.CreateTaskConfig, run: RunContext) -> dict[str, Any]:
        task = CRMTask(
            title=render(config.title, run.payload),
            description=render(config.description, run.payload) or None,
            due_date=resolve_relative_date(render(config.due_date, run.payload), today=run.today),
            priority=config.priority,
            status="pending",
            assigned_to=self._recipient(config.assign_to, run),
            tags=["Automation"],
        )
        session.add(task)
        session.flush()
        return {"task_id": str(task.id), "due_date": task.due_date.isoformat() if task.due_date else None}

    def _update_record(self, session: Session, config: catalog.UpdateRecordConfig, run: RunContext) -> dict[str, Any]:
        model = RECORD_MODELS[config.record_type]
        record_id = self._record_id(config.record_id, run)
        try:
            entity_id = uuid.UUID(record_id)
        except ValueError as exc:
            raise RuleValidationError(f"{record_id} is not a valid {config.record_type} id") from exc
        entity = session.get(model, entity_id)
        if entity is None:
            raise NotFoundError(config.record_type, entity_id)

        values = render_value(config.fields, run.payload)
        previous_stage = entity.stage if isinstance(entity, CRMDeal) else None
        for field_name, value in values.items():
            setattr(entity, field_name, self._coerce(entity, field_name, value))
        session.flush()

        output: dict[str, Any] = {"record_type": config.record_type, "record_id": record_id, "updated_fields": sorted(values)}
        if isinstance(entity, CRMDeal) and "stage" in values and entity.stage != previous_stage:
            run.emitted.append(("deal_stage_changed", self._stage_change(entity, previous_stage, run)))
            output["events"] = ["deal_stage_changed"]
        return output

    def _add_note(self, session: Session, config: catalog.AddNoteConfig, run: RunContext) -> dict[str, Any]:
        note = CRMNote(
            entity_type=config.record_type,
            entity_id=self._record_id(config.record_id, run),
            content=render(config.note_text, run.payload),
        )
        session.add(note)
        session.flush()
        return {"note_id": str(note.id)}

    def _send_notification(
        self,
        session: Session,
        config: catalog.SendNotificationConfig,
        run: RunContext,
    ) -> dict[str, Any]:
        recipient = self._recipient(config.recipient_id, run)
        if not recipient:
            raise RuleValidationError("notification recipient could not be resolved", details={"recipient_id": config.recipient_id})
        intent = CRMNotificationIntent(
            channel="in_app",
            recipient_type=config.recipient_type,
            recipient=recipient,
            body=render(config.message, run.payload),
        )
        session.add(intent)
        session.flush()
        return {"notification_id": str(intent.id), "channel": "in_app", "recipient": recipient}

    def _create_calendar_event(
        self,
        session: Session,
        config: catalog.CreateCalendarEventConfig,
        run: RunContext,
    ) -> dict[str, Any]:
        start_day = resolve_relative_date(render(config.start_date, run.payload), today=run.today)
        event = CRMCalendarEvent(
            title=render(config.title, run.payload),
            description=render(config.description, run.payload) or None,
            start_at=datetime.combine(start_day, time.fromisoformat(config.start_time), tzinfo=timezone.utc),
            duration_minutes=config.duration,
            attendees=[render(item, run.payload) for item in config.attendees],
        )
        session.add(event)
        session.flush()
        return {"event_id": str(event.id), "start_at": event.start_at.isoformat()}

    def _webhook_call(self, session: Session, config: catalog.WebhookCallConfig, run: RunContext) -> dict[str, Any]:
        url = render(config.url, run.payload)
        body = render_value(config.body, run.payload) if config.body is not None else run.payload
        status, _ = self.http_send(
            config.method,
            url,
            headers=render_value(config.headers, run.payload),
            body=body,
        )
        if status >= 400:
            raise ExternalCallError(url, status)
        return {"status": status}

    def _api_integration(self, session: Session, config: catalog.ApiIntegrationConfig, run: RunContext) -> dict[str, Any]:
        endpoint = render(config.endpoint, run.payload)
        if endpoint.startswith(("http://", "https://")):
            url = endpoint
        else:
            base_url = get_settings().integration_base_urls.get(config.service)
            if not base_url:
                raise RuleValidationError(
                    f"no base URL configured for service {config.service}",
                    details={"service": config.service},
                )
            url = f"{base_url.rstrip('/')}/{endpoint.lstrip('/')}"

        status, response = self.http_send(config.method, url, headers={}, body=render_value(config.payload, run.payload))
        if status >= 400:
            raise ExternalCallError(url, status)
        return {"service": config.service, "status": status, "response": response}

    def _data_transformation(
        self,
        session: Session,
        config: catalog.DataTransformationConfig,
        run: RunContext,
    ) -> dict[str, Any]:
        found, value = resolve_path(run.payload, config.source_field)
        if not found:
            raise RuleValidationError(f"{config.source_field} is not in the payload", details={"field": config.source_field})

        if config.transform == "uppercase":
            result: Any = str(value).upper()
        elif config.transform == "lowercase":
            result = str(value).lower()
        elif config.transform == "trim":
            result = str(value).strip()
        elif config.transform == "title":
            result = str(value).title()
        elif config.transform == "to_number":
            try:
                result = float(value)
            except (TypeError, ValueError) as exc:
                raise RuleValidationError(f"{config.source_field} is not numeric") from exc
        elif config.transform == "to_string":
            result = str(value)
        else:
            result = len(value) if isinstance(value, (str, list, dict)) else 0

        set_path(run.payload, config.target_field, result)
        return {"target_field": config.target_field, "value": result}

    def _conditional_action(
        self,
        session: Session,
        config: catalog.ConditionalActionConfig,
        run: RunContext,
    ) -> dict[str, Any]:
        passed = self.conditions.evaluate(config.condition, run.payload)
        branch = config.then_actions if passed else config.else_actions
        outputs = [{"type": item.type, "output": self.execute(session, item, run)} for item in branch]
        return {"branch": "then" if passed else "else", "actions": outputs}

    def _delay_action(self, session: Session, config: catalog.DelayActionConfig, run: RunContext) -> dict[str, Any]:
        limit = get_settings().automation_inline_delay_limit_seconds
        if config.seconds > limit:
            raise RuleValidationError(
                f"delay of {config.seconds}s exceeds the inline limit of {limit}s",
                details={"seconds": config.seconds, "limit": limit},
            )
        self.sleep(config.seconds)
        return {"delayed_seconds": config.seconds}

    def _batch_processing(
        self,
        session: Session,
        config: catalog.BatchProcessingConfig,
        run: RunContext,
    ) -> dict[str, Any]:
        found, items = resolve_path(run.payload, config.items_path)
        if not found or not isinstance(items, list):
            raise RuleValidationError(f"{config.items_path} is not a list in the payload", details={"field": config.items_path})

        cap = min(config.max_items, get_settings().automation_batch_max_items)
        selected = items[:cap]
        for index, item in enumerate(selected):
            item_run = RunContext(
                payload={**run.payload, "item": item, "index": index},
                now=run.now,
                actor_user_id=run.actor_user_id,
            )
            self.execute(session, config.action, item_run)
        return {"processed": len(selected), "skipped": len(items) - len(selected)}

    def _ai_action(self, session: Session, config: catalog.AiActionConfig, run: RunContext) -> dict[str, Any]:
        endpoint = get_settings().ai_endpoint_url
        if not endpoint:
            raise RuleValidationError("AI endpoint is not configured")
        status, response = self.http_send("POST", endpoint, headers={}, body={"prompt": render(config.prompt, run.payload)})
        if status >= 400:
            raise ExternalCallError(endpoint, status)
        output = response.get("output") if isinstance(response, dict) else response
        set_path(run.payload, config.output_field, output)
        return {"output_field": config.output_field, "output": output}

    def _recipient(self, value: str, run: RunContext) -> str | None:
        if value == "current_user":
            found, user_id = resolve_path(run.payload, "user.id")
            if found and user_id:
                return str(user_id)
            return run.actor_user_id
        rendered = render(value, run.payload)
        return rendered or None

    def _record_id(self, template: str, run: RunContext) -> str:
        rendered = render_value(template, run.payload)
        record_id = str(rendered).strip() if rendered is not None else ""
        if not record_id or "{{" in record_id:
            raise RuleValidationError("record id could not be resolved from the payload", details={"record_id": template})
        return record_id

    def _stage_change(self, deal: CRMDeal, previous_stage: str | None, run: RunContext) -> dict[str, Any]:
        return {
            "deal": {
                "id": str(deal.id),
                "title": deal.title,
                "value": float(deal.value),
                "currency": deal.currency,
                "probability": deal.probability,
                "stage": {"previous": previous_stage, "current": deal.stage},
            },
            "user": {"id": run.actor_user_id} if run.actor_user_id else {},
            "timestamp": run.now.isoformat(),
        }

    def _coerce(self, entity: Any, field_name: str, value: Any) -> Any:
        column = inspect(entity.__class__).columns[field_name]
        try:
            python_type = column.type.python_type
        except NotImplementedError:
            return value
        if value is None:
            return value
        try:
            if python_type is date:
                return value if isinstance(value, date) else date.fromisoformat(str(value))
            if python_type is Decimal:
                return Decimal(str(value))
            if python_type is int:
                return int(value)
            if python_type is float:
                return float(value)
        except (ValueError, InvalidOperation) as exc:
            raise RuleValidationError(f"invalid value for {field_name}", details={"field": field_name}) from exc
        return value
