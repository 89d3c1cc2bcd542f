from __future__ import annotations

import copy
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.automation.actions import ActionExecutor, RunContext
from app.automation.catalog import (
    TRIGGER_REGISTRY,
    action_list_adapter,
    condition_list_adapter,
    trigger_adapter,
)
from app.automation.conditions import ConditionEvaluator
from app.automation.models import AutomationRule, ExecutionLog
from app.context import get_automation_depth, get_correlation_id, reset_automation_depth, set_automation_depth
from app.core.errors import EngineError, RuleValidationError, UnknownTriggerTypeError
from app.events import publish
from app.metrics import observe_action, observe_rule_run
from app.otel import engine_span
from app.workflow.saga import translate_store_error


logger = logging.getLogger("app.automation.engine")

MESSAGE_TRIGGER_NOT_MATCHED = "Trigger did not match"
MESSAGE_CONDITIONS_NOT_MET = "Conditions not met"
MESSAGE_SUCCESS = "Rule executed successfully"


@dataclass(slots=True)
class RuleDefinition:
    trigger: Any
    conditions: list[Any]
    actions: list[Any]


@dataclass
class RuleRunResult:
    rule_id: uuid.UUID
    trigger_type: str
    trigger_matched: bool = False
    conditions_matched: bool = False
    success: bool = False
    message: str = MESSAGE_TRIGGER_NOT_MATCHED
    conditions: list[dict[str, Any]] = field(default_factory=list)
    results: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    execution_time_ms: int = 0
    log_id: uuid.UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "trigger_type": self.trigger_type,
            "trigger_matched": self.trigger_matched,
            "conditions_matched": self.conditions_matched,
            "success": self.success,
            "message": self.message,
            "conditions": self.conditions,
            "results": self.results,
            "error": self.error,
            "execution_time_ms": self.execution_time_ms,
            "log_id": self.log_id,
        }


def _validation_details(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": [str(part) for part in error["loc"]], "msg": error["msg"], "type": error["type"]}
        for error in exc.errors()
    ]


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def validate_definition(
    trigger_type: str | None,
    trigger_config: dict[str, Any] | None,
    conditions: list[dict[str, Any]] | None,
    actions: list[dict[str, Any]] | None,
) -> RuleDefinition:
    """Decode a stored rule into typed variants. Rejects the rule before any run starts."""
    if not trigger_type:
        raise RuleValidationError("rule has no trigger")
    if trigger_type not in TRIGGER_REGISTRY:
        raise UnknownTriggerTypeError(trigger_type)
    if not actions:
        raise RuleValidationError("rule has no actions")

    try:
        trigger = trigger_adapter.validate_python({"type": trigger_type, "config": trigger_config or {}})
        decoded_conditions = condition_list_adapter.validate_python(conditions or [])
        decoded_actions = action_list_adapter.validate_python(actions)
    except ValidationError as exc:
        raise RuleValidationError("rule definition is invalid", details=_validation_details(exc)) from exc
    return RuleDefinition(trigger=trigger, conditions=decoded_conditions, actions=decoded_actions)


@dataclass(slots=True)
class RuleEngine:
    """Runs one rule invocation through matching, conditions and actions, then logs it."""

    conditions: ConditionEvaluator = field(default_factory=ConditionEvaluator)
    actions: ActionExecutor | None = None
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(timezone.utc))
    dispatch: Callable[[Session, str, dict[str, Any]], Any] | None = None

    def __post_init__(self) -> None:
        if self.actions is None:
            self.actions = ActionExecutor(http_send=self.conditions.http_send, conditions=self.conditions)

    def run(
        self,
        session: Session,
        rule: AutomationRule,
        trigger_type: str,
        payload: dict[str, Any],
        *,
        actor_user_id: str | None = None,
    ) -> RuleRunResult:
        definition = validate_definition(rule.trigger_type, rule.trigger_config, rule.conditions_json, rule.actions_json)
        rule_id = rule.id
        started = time.perf_counter()
        outcome = RuleRunResult(rule_id=rule_id, trigger_type=trigger_type)
        context = RunContext(payload=copy.deepcopy(payload), now=self.clock(), actor_user_id=actor_user_id)

        with engine_span("app.automation", "automation.rule.run", rule_id=str(rule_id), trigger_type=trigger_type):
            outcome.trigger_matched = trigger_type == definition.trigger.type and definition.trigger.matches(context.payload)
            if outcome.trigger_matched:
                outcome.conditions_matched = self._evaluate_conditions(definition.conditions, context.payload, outcome)
                if not outcome.conditions_matched:
                    outcome.message = MESSAGE_CONDITIONS_NOT_MET
                else:
                    self._execute_actions(session, rule_id, definition.actions, context, outcome)

        outcome.execution_time_ms = _elapsed_ms(started)
        self._log(session, rule_id, payload, outcome)
        observe_rule_run(trigger_type, self._outcome_label(outcome), outcome.execution_time_ms / 1000)
        return outcome

    def _evaluate_conditions(self, conditions: list[Any], payload: dict[str, Any], outcome: RuleRunResult) -> bool:
        for index, condition in enumerate(conditions):
            entry: dict[str, Any] = {"index": index, "type": condition.type, "passed": False}
            try:
                entry["passed"] = bool(self.conditions.evaluate(condition, payload))
            except Exception as exc:
                logger.warning(
                    "automation.condition_failed",
                    extra={"rule_id": str(outcome.rule_id), "trigger_type": outcome.trigger_type, "error": str(exc)},
                )
                entry["error"] = exc.message if isinstance(exc, EngineError) else str(exc)
            outcome.conditions.append(entry)
            if not entry["passed"]:
                return False
        return True

    def _execute_actions(
        self,
        session: Session,
        rule_id: uuid.UUID,
        actions: list[Any],
        context: RunContext,
        outcome: RuleRunResult,
    ) -> None:
        depth_token = set_automation_depth(get_automation_depth() + 1)
        try:
            for index, action in enumerate(actions):
                outcome.results.append(self._execute_action(session, rule_id, index, action, context))
        finally:
            reset_automation_depth(depth_token)

        failed = [item for item in outcome.results if not item["success"]]
        outcome.success = not failed
        if failed:
            outcome.message = f"{len(failed)} of {len(outcome.results)} actions failed"
            outcome.error = failed[0]["error"]
        else:
            outcome.message = MESSAGE_SUCCESS

    def _execute_action(
        self,
        session: Session,
        rule_id: uuid.UUID,
        index: int,
        action: Any,
        context: RunContext,
    ) -> dict[str, Any]:
        started = time.perf_counter()
        entry: dict[str, Any] = {"index": index, "id": action.id, "type": action.type, "success": False, "retryable": False}
        try:
            entry["output"] = self.actions.execute(session, action, context)
            session.commit()
            entry["success"] = True
        except Exception as exc:
            session.rollback()
            context.emitted.clear()
            error: BaseException = translate_store_error(exc) if isinstance(exc, SQLAlchemyError) else exc
            if isinstance(error, EngineError):
                entry["error"] = error.message
                entry["error_code"] = error.code
                entry["retryable"] = error.retryable
            else:
                entry["error"] = str(error) or error.__class__.__name__
                entry["error_code"] = "action_failed"
            logger.exception(
                "automation.action_failed",
                extra={
                    "rule_id": str(rule_id),
                    "action_type": action.type,
                    "action_index": index,
                    "error": entry["error"],
                },
            )
        entry["execution_time_ms"] = _elapsed_ms(started)
        observe_action(action.type, entry["success"])
        self._cascade(session, rule_id, context)
        return entry

    def _cascade(self, session: Session, rule_id: uuid.UUID, context: RunContext) -> None:
        emitted, context.emitted = context.emitted, []
        if self.dispatch is None:
            return
        for trigger_type, payload in emitted:
            try:
                self.dispatch(session, trigger_type, payload)
            except Exception as exc:
                session.rollback()
                logger.exception(
                    "automation.cascade_failed",
                    extra={"rule_id": str(rule_id), "trigger_type": trigger_type, "error": str(exc)[:500]},
                )

    def _log(self, session: Session, rule_id: uuid.UUID, payload: dict[str, Any], outcome: RuleRunResult) -> None:
        executed_at = self.clock()
        log = ExecutionLog(
            rule_id=rule_id,
            trigger_type=outcome.trigger_type,
            trigger_data=payload,
            trigger_matched=outcome.trigger_matched,
            conditions_matched=outcome.conditions_matched,
            success=outcome.success,
            message=outcome.message,
            details={"conditions": outcome.conditions, "actions": outcome.results, "error": outcome.error},
            execution_time_ms=outcome.execution_time_ms,
            correlation_id=get_correlation_id(),
            executed_at=executed_at,
        )
        session.add(log)

        rule = session.get(AutomationRule, rule_id)
        if rule is not None:
            rule.execution_count += 1
            if outcome.success:
                rule.success_count += 1
            elif outcome.conditions_matched:
                rule.failure_count += 1
            rule.last_executed_at = executed_at
        session.commit()
        outcome.log_id = log.id

        logger.info(
            "automation.rule_logged",
            extra={
                "rule_id": str(rule_id),
                "trigger_type": outcome.trigger_type,
                "log_id": str(log.id),
                "status": self._outcome_label(outcome),
            },
        )
        publish(
            "automation.rule.executed",
            {
                "rule_id": str(rule_id),
                "log_id": str(log.id),
                "trigger_type": outcome.trigger_type,
                "success": outcome.success,
            },
        )

    @staticmethod
    def _outcome_label(outcome: RuleRunResult) -> str:
        if not outcome.trigger_matched:
            return "not_matched"
        if not outcome.conditions_matched:
            return "conditions_not_met"
        return "succeeded" if outcome.success else "failed"
