from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class RuleBase(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    is_active: bool = True
    trigger_type: str = Field(min_length=1, max_length=64)
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    conditions: list[dict[str, Any]] = Field(default_factory=list)
    actions: list[dict[str, Any]] = Field(default_factory=list)


class RuleCreate(RuleBase):
    pass


class RuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    is_active: bool | None = None
    trigger_type: str | None = Field(default=None, min_length=1, max_length=64)
    trigger_config: dict[str, Any] | None = None
    conditions: list[dict[str, Any]] | None = None
    actions: list[dict[str, Any]] | None = None


class RuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    is_active: bool
    trigger_type: str
    trigger_config: dict[str, Any]
    conditions: list[dict[str, Any]] = Field(validation_alias="conditions_json")
    actions: list[dict[str, Any]] = Field(validation_alias="actions_json")
    execution_count: int
    success_count: int
    failure_count: int
    last_executed_at: datetime | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class InvokeRequest(BaseModel):
    trigger_data: dict[str, Any] | None = None


class ConditionOutcome(BaseModel):
    index: int
    type: str
    passed: bool
    error: str | None = None


class ActionOutcome(BaseModel):
    index: int
    id: str | None = None
    type: str
    success: bool
    error: str | None = None
    error_code: str | None = None
    retryable: bool = False
    output: dict[str, Any] | None = None
    execution_time_ms: int = 0


class InvocationResult(BaseModel):
    rule_id: UUID
    trigger_type: str
    success: bool
    trigger_matched: bool
    conditions_matched: bool
    message: str
    conditions: list[ConditionOutcome] = Field(default_factory=list)
    results: list[ActionOutcome] = Field(default_factory=list)
    error: str | None = None
    execution_time_ms: int
    log_id: UUID | None = None


class EventDispatchRequest(BaseModel):
    trigger_type: str = Field(min_length=1, max_length=64)
    payload: dict[str, Any] = Field(default_factory=dict)


class EventDispatchResult(BaseModel):
    trigger_type: str
    matched_rules: int
    results: list[InvocationResult] = Field(default_factory=list)
    skipped_reason: str | None = None


class ExecutionLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    rule_id: UUID
    trigger_type: str
    trigger_data: dict[str, Any]
    trigger_matched: bool
    conditions_matched: bool
    success: bool
    message: str
    details: dict[str, Any]
    execution_time_ms: int
    correlation_id: str | None
    executed_at: datetime


class CatalogEntry(BaseModel):
    type: str
    config_schema: dict[str, Any]
    defaults: dict[str, Any] | None = None


class CatalogRead(BaseModel):
    triggers: list[CatalogEntry]
    conditions: list[CatalogEntry]
    actions: list[CatalogEntry]
    operators: list[str]


class FixtureRead(BaseModel):
    trigger_type: str
    payload: dict[str, Any]
