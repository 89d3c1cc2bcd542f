from __future__ import annotations

from datetime import time
from typing import Annotated, Any, Literal, get_args

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator, model_validator

from app.automation.templating import resolve_path


ComparisonOperator = Literal[
    "equals",
    "not_equals",
    "greater_than",
    "less_than",
    "greater_or_equal",
    "less_or_equal",
    "contains",
    "exists",
]
HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"]
RecordType = Literal["deal", "contact", "lead", "company", "task"]

UPDATABLE_FIELDS: dict[str, set[str]] = {
    "deal": {"title", "description", "value", "currency", "probability", "status", "stage", "expected_close_date"},
    "contact": {"first_name", "last_name", "email", "phone", "title", "tags"},
    "lead": {"status", "score", "notes", "source"},
    "company": {"name", "domain", "industry", "size"},
    "task": {"title", "description", "due_date", "priority", "status", "assigned_to"},
}


def _clock_time(value: str) -> str:
    try:
        time.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"{value} is not a valid HH:MM time") from exc
    return value


def _any_or_equal(expected: str | None, payload: dict[str, Any], path: str) -> bool:
    if expected is None or expected == "any":
        return True
    found, value = resolve_path(payload, path)
    return found and str(value) == expected


# Triggers


class EmptyConfig(BaseModel):
    pass


class DealStageChangedConfig(BaseModel):
    from_stage: str = "any"
    to_stage: str = "any"


class FormSubmittedConfig(BaseModel):
    form_id: str = "any"


class EmailClickedConfig(BaseModel):
    url_contains: str | None = None


class WebhookReceivedConfig(BaseModel):
    source: str = "any"


class ScheduledTriggerConfig(BaseModel):
    interval_minutes: int = Field(default=60, ge=1)
    cron: str | None = None


class ApiCallConfig(BaseModel):
    endpoint: str | None = None


class DatabaseChangeConfig(BaseModel):
    table: str | None = None
    operation: Literal["insert", "update", "delete", "any"] = "any"


class _UnfilteredTrigger(BaseModel):
    config: EmptyConfig = Field(default_factory=EmptyConfig)

    def matches(self, payload: dict[str, Any]) -> bool:
        return True


class DealStageChangedTrigger(BaseModel):
    type: Literal["deal_stage_changed"]
    config: DealStageChangedConfig = Field(default_factory=DealStageChangedConfig)

    def matches(self, payload: dict[str, Any]) -> bool:
        return _any_or_equal(self.config.from_stage, payload, "deal.stage.previous") and _any_or_equal(
            self.config.to_stage, payload, "deal.stage.current"
        )


class DealCreatedTrigger(_UnfilteredTrigger):
    type: Literal["deal_created"]


class ContactCreatedTrigger(_UnfilteredTrigger):
    type: Literal["contact_created"]


class TaskDeadlineMissedTrigger(_UnfilteredTrigger):
    type: Literal["task_deadline_missed"]


class TaskCompletedTrigger(_UnfilteredTrigger):
    type: Literal["task_completed"]


class FormSubmittedTrigger(BaseModel):
    type: Literal["form_submitted"]
    config: FormSubmittedConfig = Field(default_factory=FormSubmittedConfig)

    def matches(self, payload: dict[str, Any]) -> bool:
        return _any_or_equal(self.config.form_id, payload, "form.id")


class EmailOpenedTrigger(_UnfilteredTrigger):
    type: Literal["email_opened"]


class EmailClickedTrigger(BaseModel):
    type: Literal["email_clicked"]
    config: EmailClickedConfig = Field(default_factory=EmailClickedConfig)

    def matches(self, payload: dict[str, Any]) -> bool:
        if not self.config.url_contains:
            return True
        found, url = resolve_path(payload, "event.metadata.url")
        return found and isinstance(url, str) and self.config.url_contains in url


class WebhookReceivedTrigger(BaseModel):
    type: Literal["webhook_received"]
    config: WebhookReceivedConfig = Field(default_factory=WebhookReceivedConfig)

    def matches(self, payload: dict[str, Any]) -> bool:
        return _any_or_equal(self.config.source, payload, "webhook.source")


class ScheduledTrigger(BaseModel):
    type: Literal["scheduled_trigger"]
    config: ScheduledTriggerConfig = Field(default_factory=ScheduledTriggerConfig)

    def matches(self, payload: dict[str, Any]) -> bool:
        return True


class ApiCallTrigger(BaseModel):
    type: Literal["api_call"]
    config: ApiCallConfig = Field(default_factory=ApiCallConfig)

    def matches(self, payload: dict[str, Any]) -> bool:
        return _any_or_equal(self.config.endpoint, payload, "request.endpoint")


class DatabaseChangeTrigger(BaseModel):
    type: Literal["database_change"]
    config: DatabaseChangeConfig = Field(default_factory=DatabaseChangeConfig)

    def matches(self, payload: dict[str, Any]) -> bool:
        return _any_or_equal(self.config.table, payload, "change.table") and _any_or_equal(
            self.config.operation, payload, "change.operation"
        )


Trigger = Annotated[
    DealStageChangedTrigger
    | DealCreatedTrigger
    | ContactCreatedTrigger
    | TaskDeadlineMissedTrigger
    | TaskCompletedTrigger
    | FormSubmittedTrigger
    | EmailOpenedTrigger
    | EmailClickedTrigger
    | WebhookReceivedTrigger
    | ScheduledTrigger
    | ApiCallTrigger
    | DatabaseChangeTrigger,
    Field(discriminator="type"),
]


# Conditions


class ThresholdConfig(BaseModel):
    field: str
    operator: ComparisonOperator = "greater_than"
    value: float


class DealValueConfig(ThresholdConfig):
    field: str = "deal.value"
    value: float = 10000


class DealProbabilityConfig(ThresholdConfig):
    field: str = "deal.probability"
    value: float = 50


class TaskPriorityConfig(BaseModel):
    field: str = "task.priority"
    priority: Literal["low", "medium", "high", "urgent"] = "high"


class ContactTagsConfig(BaseModel):
    field: str = "contact.tags"
    tags: list[str] = Field(default_factory=list)
    operator: Literal["contains_any", "contains_all", "contains_none"] = "contains_any"


class TimeBasedConfig(BaseModel):
    days: list[str] = Field(default_factory=lambda: ["weekday"])
    time_from: str = Field(default="09:00", pattern=r"^\d{2}:\d{2}$")
    time_to: str = Field(default="17:00", pattern=r"^\d{2}:\d{2}$")
    timestamp_field: str = "timestamp"

    @field_validator("time_from", "time_to")
    @classmethod
    def validate_times(cls, value: str) -> str:
        return _clock_time(value)

    @field_validator("days")
    @classmethod
    def validate_days(cls, value: list[str]) -> list[str]:
        allowed = {"any", "weekday", "weekend", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"}
        normalized = [item.lower() for item in value]
        unknown = sorted(set(normalized) - allowed)
        if unknown:
            raise ValueError(f"unknown day names: {', '.join(unknown)}")
        return normalized


class CustomFieldConfig(BaseModel):
    field: str = Field(min_length=1)
    operator: ComparisonOperator = "equals"
    value: Any = None


class ComplexLogicConfig(BaseModel):
    logic: Literal["and", "or", "not"] = "and"
    conditions: list[Condition] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_not_arity(self) -> ComplexLogicConfig:
        if self.logic == "not" and len(self.conditions) != 1:
            raise ValueError("logic 'not' takes exactly one condition")
        return self


class DataValidationConfig(BaseModel):
    field: str = Field(min_length=1)
    rule: Literal["required", "email", "numeric", "regex"] = "required"
    pattern: str | None = None

    @model_validator(mode="after")
    def validate_pattern(self) -> DataValidationConfig:
        if self.rule == "regex" and not self.pattern:
            raise ValueError("rule 'regex' needs a pattern")
        return self


class ExternalApiCheckConfig(BaseModel):
    url: str = Field(min_length=1)
    method: HttpMethod = "GET"
    expected_status: int = Field(default=200, ge=100, le=599)


class MachineLearningConfig(BaseModel):
    field: str = "prediction.score"
    threshold: float = 0.5
    operator: ComparisonOperator = "greater_than"


class DealValueCondition(BaseModel):
    type: Literal["deal_value"]
    config: DealValueConfig = Field(default_factory=DealValueConfig)


class DealProbabilityCondition(BaseModel):
    type: Literal["deal_probability"]
    config: DealProbabilityConfig = Field(default_factory=DealProbabilityConfig)


class TaskPriorityCondition(BaseModel):
    type: Literal["task_priority"]
    config: TaskPriorityConfig = Field(default_factory=TaskPriorityConfig)


class ContactTagsCondition(BaseModel):
    type: Literal["contact_tags"]
    config: ContactTagsConfig = Field(default_factory=ContactTagsConfig)


class TimeBasedCondition(BaseModel):
    type: Literal["time_based"]
    config: TimeBasedConfig = Field(default_factory=TimeBasedConfig)


class CustomFieldCondition(BaseModel):
    type: Literal["custom_field"]
    config: CustomFieldConfig


class ComplexLogicCondition(BaseModel):
    type: Literal["complex_logic"]
    config: ComplexLogicConfig = Field(default_factory=ComplexLogicConfig)


class DataValidationCondition(BaseModel):
    type: Literal["data_validation"]
    config: DataValidationConfig


class ExternalApiCheckCondition(BaseModel):
    type: Literal["external_api_check"]
    config: ExternalApiCheckConfig


class MachineLearningCondition(BaseModel):
    type: Literal["machine_learning"]
    config: MachineLearningConfig = Field(default_factory=MachineLearningConfig)


Condition = Annotated[
    DealValueCondition
    | DealProbabilityCondition
    | TaskPriorityCondition
    | ContactTagsCondition
    | TimeBasedCondition
    | CustomFieldCondition
    | ComplexLogicCondition
    | DataValidationCondition
    | ExternalApiCheckCondition
    | MachineLearningCondition,
    Field(discriminator="type"),
]


# Actions


class SendEmailConfig(BaseModel):
    to: str = "{{contact.email}}"
    subject: str = ""
    body: str = ""
    template_id: str | None = None


class CreateTaskConfig(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    due_date: str = "in_3_days"
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    assign_to: str = "current_user"


class UpdateRecordConfig(BaseModel):
    record_type: RecordType = "deal"
    record_id: str = "{{deal.id}}"
    fields: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_fields(self) -> UpdateRecordConfig:
        if not self.fields:
            raise ValueError("update_record needs at least one field")
        blocked = sorted(set(self.fields) - UPDATABLE_FIELDS[self.record_type])
        if blocked:
            raise ValueError(f"fields not updatable on {self.record_type}: {', '.join(blocked)}")
        return self


class AddNoteConfig(BaseModel):
    record_type: RecordType = "deal"
    record_id: str = "{{deal.id}}"
    note_text: str = Field(min_length=1)


class SendNotificationConfig(BaseModel):
    message: str = Field(min_length=1)
    recipient_type: Literal["user", "team", "role"] = "user"
    recipient_id: str = "current_user"


class CreateCalendarEventConfig(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    start_date: str = "tomorrow"
    start_time: str = Field(default="09:00", pattern=r"^\d{2}:\d{2}$")
    duration: int = Field(default=30, ge=1)
    attendees: list[str] = Field(default_factory=list)

    @field_validator("start_time")
    @classmethod
    def validate_start_time(cls, value: str) -> str:
        return _clock_time(value)


class WebhookCallConfig(BaseModel):
    url: str = Field(min_length=1)
    method: HttpMethod = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None


class ApiIntegrationConfig(BaseModel):
    service: str = Field(min_length=1)
    endpoint: str = Field(min_length=1)
    method: HttpMethod = "POST"
    payload: dict[str, Any] = Field(default_factory=dict)


class DataTransformationConfig(BaseModel):
    source_field: str = Field(min_length=1)
    target_field: str = Field(min_length=1)
    transform: Literal["uppercase", "lowercase", "trim", "title", "to_number", "to_string", "length"] = "trim"


class ConditionalActionConfig(BaseModel):
    condition: Condition
    then_actions: list[Action] = Field(default_factory=list)
    else_actions: list[Action] = Field(default_factory=list)


class DelayActionConfig(BaseModel):
    seconds: float = Field(default=1, ge=0)


class BatchProcessingConfig(BaseModel):
    items_path: str = Field(min_length=1)
    action: Action
    max_items: int = Field(default=100, ge=1)


class AiActionConfig(BaseModel):
    prompt: str = Field(min_length=1)
    output_field: str = "ai.output"


class SendEmailAction(BaseModel):
    type: Literal["send_email"]
    id: str | None = None
    config: SendEmailConfig = Field(default_factory=SendEmailConfig)


class CreateTaskAction(BaseModel):
    type: Literal["create_task"]
    id: str | None = None
    config: CreateTaskConfig


class UpdateRecordAction(BaseModel):
    type: Literal["update_record"]
    id: str | None = None
    config: UpdateRecordConfig


class AddNoteAction(BaseModel):
    type: Literal["add_note"]
    id: str | None = None
    config: AddNoteConfig


class SendNotificationAction(BaseModel):
    type: Literal["send_notification"]
    id: str | None = None
    config: SendNotificationConfig


class CreateCalendarEventAction(BaseModel):
    type: Literal["create_calendar_event"]
    id: str | None = None
    config: CreateCalendarEventConfig


class WebhookCallAction(BaseModel):
    type: Literal["webhook_call"]
    id: str | None = None
    config: WebhookCallConfig


class ApiIntegrationAction(BaseModel):
    type: Literal["api_integration"]
    id: str | None = None
    config: ApiIntegrationConfig


class DataTransformationAction(BaseModel):
    type: Literal["data_transformation"]
    id: str | None = None
    config: DataTransformationConfig


class ConditionalAction(BaseModel):
    type: Literal["conditional_action"]
    id: str | None = None
    config: ConditionalActionConfig


class DelayAction(BaseModel):
    type: Literal["delay_action"]
    id: str | None = None
    config: DelayActionConfig = Field(default_factory=DelayActionConfig)


class BatchProcessingAction(BaseModel):
    type: Literal["batch_processing"]
    id: str | None = None
    config: BatchProcessingConfig


class AiAction(BaseModel):
    type: Literal["ai_action"]
    id: str | None = None
    config: AiActionConfig


Action = Annotated[
    SendEmailAction
    | CreateTaskAction
    | UpdateRecordAction
    | AddNoteAction
    | SendNotificationAction
    | CreateCalendarEventAction
    | WebhookCallAction
    | ApiIntegrationAction
    | DataTransformationAction
    | ConditionalAction
    | DelayAction
    | BatchProcessingAction
    | AiAction,
    Field(discriminator="type"),
]


for _model in (
    ComplexLogicConfig,
    ComplexLogicCondition,
    ConditionalActionConfig,
    ConditionalAction,
    BatchProcessingConfig,
    BatchProcessingAction,
):
    _model.model_rebuild()


def _registry(union: Any) -> dict[str, type[BaseModel]]:
    members = get_args(get_args(union)[0])
    return {get_args(member.model_fields["type"].annotation)[0]: member for member in members}


TRIGGER_REGISTRY = _registry(Trigger)
CONDITION_REGISTRY = _registry(Condition)
ACTION_REGISTRY = _registry(Action)

TRIGGER_TYPES = tuple(TRIGGER_REGISTRY)
CONDITION_TYPES = tuple(CONDITION_REGISTRY)
ACTION_TYPES = tuple(ACTION_REGISTRY)

trigger_adapter: TypeAdapter[Any] = TypeAdapter(Trigger)
condition_list_adapter: TypeAdapter[Any] = TypeAdapter(list[Condition])
action_list_adapter: TypeAdapter[Any] = TypeAdapter(list[Action])


def _config_model(variant: type[BaseModel]) -> type[BaseModel]:
    return variant.model_fields["config"].annotation


def _defaults(config_model: type[BaseModel]) -> dict[str, Any] | None:
    try:
        return config_model().model_dump(mode="json")
    except ValidationError:
        return None


def describe(registry: dict[str, type[BaseModel]]) -> list[dict[str, Any]]:
    """Config schema and defaults per variant, in catalog order."""
    entries: list[dict[str, Any]] = []
    for type_name, variant in registry.items():
        config_model = _config_model(variant)
        entries.append(
            {
                "type": type_name,
                "config_schema": config_model.model_json_schema(),
                "defaults": _defaults(config_model),
            }
        )
    return entries
