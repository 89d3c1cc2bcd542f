from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, get_args

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.automation.catalog import (
    ACTION_REGISTRY,
    CONDITION_REGISTRY,
    TRIGGER_REGISTRY,
    ComparisonOperator,
    describe,
)
from app.automation.engine import RuleEngine, RuleRunResult, validate_definition
from app.automation.fixtures import generate_trigger_payload
from app.automation.models import AutomationRule, ExecutionLog
from app.automation.schemas import (
    CatalogRead,
    EventDispatchResult,
    ExecutionLogRead,
    InvocationResult,
    RuleCreate,
    RuleRead,
    RuleUpdate,
)
from app.context import get_automation_depth
from app.core.config import get_settings
from app.core.errors import NotFoundError, RuleValidationError, UnknownTriggerTypeError
from app.crm.models import CRMTask
from app.metrics import observe_automation_depth_block


logger = logging.getLogger("app.automation")

_CLOSED_TASK_STATUSES = ("completed", "overdue")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


@dataclass(slots=True)
class AutomationService:
    engine: RuleEngine = field(default_factory=RuleEngine)

    def __post_init__(self) -> None:
        if self.engine.dispatch is None:
            self.engine.dispatch = self.dispatch_event

    def create_rule(self, session: Session, dto: RuleCreate, *, actor_user_id: str | None = None) -> RuleRead:
        validate_definition(dto.trigger_type, dto.trigger_config, dto.conditions, dto.actions)
        rule = AutomationRule(
            name=dto.name,
            description=dto.description,
            is_active=dto.is_active,
            trigger_type=dto.trigger_type,
            trigger_config=dto.trigger_config,
            conditions_json=dto.conditions,
            actions_json=dto.actions,
            created_by=actor_user_id,
        )
        session.add(rule)
        session.commit()
        session.refresh(rule)
        logger.info("automation.rule_created", extra={"rule_id": str(rule.id), "trigger_type": rule.trigger_type})
        return RuleRead.model_validate(rule)

    def update_rule(self, session: Session, rule_id: uuid.UUID, dto: RuleUpdate) -> RuleRead:
        rule = self._get(session, rule_id)
        changes = dto.model_dump(exclude_unset=True)
        trigger_type = changes.get("trigger_type", rule.trigger_type)
        trigger_config = changes.get("trigger_config", rule.trigger_config)
        conditions = changes.get("conditions", rule.conditions_json)
        actions = changes.get("actions", rule.actions_json)
        validate_definition(trigger_type, trigger_config, conditions, actions)

        for key in ("name", "description", "is_active"):
            if key in changes:
                setattr(rule, key, changes[key])
        rule.trigger_type = trigger_type
        rule.trigger_config = trigger_config or {}
        rule.conditions_json = conditions or []
        rule.actions_json = actions
        session.commit()
        session.refresh(rule)
        logger.info("automation.rule_updated", extra={"rule_id": str(rule.id), "trigger_type": rule.trigger_type})
        return RuleRead.model_validate(rule)

    def get_rule(self, session: Session, rule_id: uuid.UUID) -> RuleRead:
        return RuleRead.model_validate(self._get(session, rule_id))

    def list_rules(
        self,
        session: Session,
        *,
        active: bool | None = None,
        trigger_type: str | None = None,
        limit: int = 100,
    ) -> list[RuleRead]:
        stmt = select(AutomationRule).where(AutomationRule.deleted_at.is_(None))
        if active is not None:
            stmt = stmt.where(AutomationRule.is_active.is_(active))
        if trigger_type is not None:
            stmt = stmt.where(AutomationRule.trigger_type == trigger_type)
        rows = session.scalars(stmt.order_by(AutomationRule.created_at.asc()).limit(max(1, min(limit, 500)))).all()
        return [RuleRead.model_validate(row) for row in rows]

    def delete_rule(self, session: Session, rule_id: uuid.UUID) -> None:
        rule = self._get(session, rule_id)
        rule.deleted_at = utcnow()
        rule.is_active = False
        session.commit()
        logger.info("automation.rule_deleted", extra={"rule_id": str(rule_id)})

    def invoke_rule(
        self,
        session: Session,
        rule_id: uuid.UUID,
        trigger_data: dict[str, Any] | None = None,
        *,
        actor_user_id: str | None = None,
    ) -> InvocationResult:
        """Run one rule against `trigger_data`, or against a synthetic payload for its trigger when omitted."""
        rule = self._get(session, rule_id)
        validate_definition(rule.trigger_type, rule.trigger_config, rule.conditions_json, rule.actions_json)
        if trigger_data is None:
            trigger_data = generate_trigger_payload(rule.trigger_type, config=rule.trigger_config)
        outcome = self.engine.run(session, rule, rule.trigger_type, trigger_data, actor_user_id=actor_user_id)
        return self._to_result(outcome)

    def dispatch_event(
        self,
        session: Session,
        trigger_type: str,
        payload: dict[str, Any],
        *,
        actor_user_id: str | None = None,
    ) -> EventDispatchResult:
        if trigger_type not in TRIGGER_REGISTRY:
            raise UnknownTriggerTypeError(trigger_type)

        settings = get_settings()
        depth = get_automation_depth()
        if depth >= settings.automation_max_depth:
            observe_automation_depth_block()
            logger.warning(
                "automation.depth_limit_reached",
                extra={"trigger_type": trigger_type, "status": "skipped", "error": f"depth {depth}"},
            )
            return EventDispatchResult(trigger_type=trigger_type, matched_rules=0, skipped_reason="automation_depth_exceeded")

        rule_ids = session.scalars(
            select(AutomationRule.id)
            .where(
                AutomationRule.trigger_type == trigger_type,
                AutomationRule.is_active.is_(True),
                AutomationRule.deleted_at.is_(None),
            )
            .order_by(AutomationRule.created_at.asc())
        ).all()

        results: list[InvocationResult] = []
        for rule_id in rule_ids:
            rule = session.get(AutomationRule, rule_id)
            if rule is None:
                continue
            try:
                outcome = self.engine.run(session, rule, trigger_type, payload, actor_user_id=actor_user_id)
            except RuleValidationError as exc:
                logger.warning(
                    "automation.rule_skipped",
                    extra={"rule_id": str(rule_id), "trigger_type": trigger_type, "error": exc.message},
                )
                continue
            results.append(self._to_result(outcome))
        return EventDispatchResult(trigger_type=trigger_type, matched_rules=len(rule_ids), results=results)

    def list_execution_logs(
        self,
        session: Session,
        *,
        rule_id: uuid.UUID | None = None,
        limit: int | None = None,
    ) -> list[ExecutionLogRead]:
        settings = get_settings()
        page_size = limit if limit is not None else settings.execution_log_page_size
        page_size = max(1, min(page_size, settings.execution_log_max_page_size))
        stmt = select(ExecutionLog)
        if rule_id is not None:
            stmt = stmt.where(ExecutionLog.rule_id == rule_id)
        rows = session.scalars(
            stmt.order_by(ExecutionLog.executed_at.desc(), ExecutionLog.id.desc()).limit(page_size)
        ).all()
        return [ExecutionLogRead.model_validate(row) for row in rows]

    def catalog(self) -> CatalogRead:
        return CatalogRead.model_validate(
            {
                "triggers": describe(TRIGGER_REGISTRY),
                "conditions": describe(CONDITION_REGISTRY),
                "actions": describe(ACTION_REGISTRY),
                "operators": list(get_args(ComparisonOperator)),
            }
        )

    def run_scheduled(self, session: Session, *, now: datetime | None = None) -> dict[str, int]:
        """One scheduler tick: fire due `scheduled_trigger` rules, then flag overdue tasks."""
        now = now or utcnow()
        rules_run = 0
        rules = session.scalars(
            select(AutomationRule)
            .where(
                AutomationRule.trigger_type == "scheduled_trigger",
                AutomationRule.is_active.is_(True),
                AutomationRule.deleted_at.is_(None),
            )
            .order_by(AutomationRule.created_at.asc())
        ).all()
        for rule in rules:
            interval = int((rule.trigger_config or {}).get("interval_minutes") or 60)
            if rule.last_executed_at is not None and _as_utc(rule.last_executed_at) + timedelta(minutes=interval) > now:
                continue
            try:
                self.engine.run(session, rule, "scheduled_trigger", {"timestamp": now.isoformat(), "scheduled": True})
            except RuleValidationError as exc:
                logger.warning("automation.rule_skipped", extra={"rule_id": str(rule.id), "error": exc.message})
                continue
            rules_run += 1

        overdue = session.scalars(
            select(CRMTask).where(
                CRMTask.due_date.is_not(None),
                CRMTask.due_date < now.date(),
                CRMTask.status.not_in(_CLOSED_TASK_STATUSES),
            )
        ).all()
        payloads = []
        for task in overdue:
            task.status = "overdue"
            payloads.append(
                {
                    "task": {
                        "id": str(task.id),
                        "title": task.title,
                        "description": task.description,
                        "due_date": task.due_date.isoformat() if task.due_date else None,
                        "status": task.status,
                        "priority": task.priority,
                        "assigned_to": task.assigned_to,
                        "completed": False,
                    },
                    "timestamp": now.isoformat(),
                }
            )
        session.commit()
        for payload in payloads:
            self.dispatch_event(session, "task_deadline_missed", payload)

        logger.info(
            "automation.scheduled_tick",
            extra={"trigger_type": "scheduled_trigger", "status": f"rules={rules_run} overdue_tasks={len(payloads)}"},
        )
        return {"rules_run": rules_run, "overdue_tasks": len(payloads)}

    def _get(self, session: Session, rule_id: uuid.UUID) -> AutomationRule:
        rule = session.get(AutomationRule, rule_id)
        if rule is None or rule.deleted_at is not None:
            raise NotFoundError("automation_rule", rule_id)
        return rule

    def _to_result(self, outcome: RuleRunResult) -> InvocationResult:
        return InvocationResult.model_validate(outcome.to_dict())


automation_service = AutomationService()
