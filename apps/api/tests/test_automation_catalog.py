from __future__ import annotations

from datetime import date, datetime, timezone

import pytest
from pydantic import ValidationError

from app.automation.actions import ActionExecutor
from app.automation.catalog import (
    ACTION_REGISTRY,
    CONDITION_REGISTRY,
    TRIGGER_REGISTRY,
    condition_list_adapter,
    describe,
    trigger_adapter,
)
from app.automation.conditions import ConditionEvaluator, compare
from app.automation.engine import validate_definition
from app.automation.fixtures import FIXTURE_GENERATORS, generate_trigger_payload
from app.automation.templating import render, render_value, resolve_path, resolve_relative_date, set_path
from app.core.errors import RuleValidationError, UnknownTriggerTypeError


NOW = datetime(2026, 10, 19, 10, 30, tzinfo=timezone.utc)


def _condition(raw: dict) -> object:
    return condition_list_adapter.validate_python([raw])[0]


def test_registries_cover_every_variant() -> None:
    assert len(TRIGGER_REGISTRY) == 12
    assert len(CONDITION_REGISTRY) == 10
    assert len(ACTION_REGISTRY) == 13
    assert set(FIXTURE_GENERATORS) == set(TRIGGER_REGISTRY)
    assert set(ConditionEvaluator().handlers()) == set(CONDITION_REGISTRY)
    assert set(ActionExecutor().handlers()) == set(ACTION_REGISTRY)


def test_describe_reports_schema_and_defaults() -> None:
    entries = {entry["type"]: entry for entry in describe(ACTION_REGISTRY)}

    assert entries["delay_action"]["defaults"] == {"seconds": 1.0}
    assert entries["create_task"]["defaults"] is None
    assert "title" in entries["create_task"]["config_schema"]["properties"]


@pytest.mark.parametrize("trigger_type", sorted(TRIGGER_REGISTRY))
def test_fixture_matches_default_trigger(trigger_type: str) -> None:
    trigger = trigger_adapter.validate_python({"type": trigger_type, "config": {}})
    payload = generate_trigger_payload(trigger_type, now=NOW)

    assert trigger.matches(payload)
    assert "timestamp" in payload


@pytest.mark.parametrize(
    ("trigger_type", "config"),
    [
        ("deal_stage_changed", {"from_stage": "proposal", "to_stage": "won"}),
        ("form_submitted", {"form_id": "demo-request"}),
        ("email_clicked", {"url_contains": "webinar"}),
        ("webhook_received", {"source": "hubspot"}),
        ("api_call", {"endpoint": "/api/contacts"}),
        ("database_change", {"table": "crm_contact", "operation": "insert"}),
    ],
)
def test_fixture_follows_trigger_config(trigger_type: str, config: dict) -> None:
    trigger = trigger_adapter.validate_python({"type": trigger_type, "config": config})

    assert trigger.matches(generate_trigger_payload(trigger_type, now=NOW, config=config))


def test_fixture_for_unknown_trigger_raises() -> None:
    with pytest.raises(UnknownTriggerTypeError):
        generate_trigger_payload("deal_exploded")


def test_deal_stage_trigger_filters_on_stage() -> None:
    trigger = trigger_adapter.validate_python({"type": "deal_stage_changed", "config": {"to_stage": "closed-won"}})

    assert trigger.matches({"deal": {"stage": {"previous": "proposal", "current": "closed-won"}}})
    assert not trigger.matches({"deal": {"stage": {"previous": "proposal", "current": "lost"}}})
    assert not trigger.matches({"deal": {}})


def test_render_leaves_unknown_placeholders() -> None:
    data = {"deal": {"title": "Renewal", "value": 1200, "tags": ["a", "b"]}, "flag": True}

    assert render("{{deal.title}} for {{deal.value}}", data) == "Renewal for 1200"
    assert render("Hi {{contact.name}}", data) == "Hi {{contact.name}}"
    assert render("{{flag}} {{deal.tags}}", data) == 'true ["a", "b"]'
    assert render(None, data) == ""


def test_render_value_keeps_single_placeholder_type() -> None:
    data = {"deal": {"value": 1200, "title": "Renewal"}}

    assert render_value({"value": "{{deal.value}}", "label": "Deal {{deal.title}}"}, data) == {
        "value": 1200,
        "label": "Deal Renewal",
    }
    assert render_value(["{{deal.missing}}"], data) == ["{{deal.missing}}"]


def test_paths_read_and_write_nested_values() -> None:
    data: dict = {"items": [{"sku": "A"}]}

    assert resolve_path(data, "items.0.sku") == (True, "A")
    assert resolve_path(data, "items.3.sku") == (False, None)
    set_path(data, "derived.total.value", 3)
    assert data["derived"] == {"total": {"value": 3}}


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, date(2026, 10, 19)),
        ("today", date(2026, 10, 19)),
        ("tomorrow", date(2026, 10, 20)),
        ("in_3_days", date(2026, 10, 22)),
        ("in_1_day", date(2026, 10, 20)),
        ("2026-12-24", date(2026, 12, 24)),
        ("next week", date(2026, 10, 19)),
    ],
)
def test_relative_dates(value: str | None, expected: date) -> None:
    assert resolve_relative_date(value, today=date(2026, 10, 19)) == expected


def test_compare_operators() -> None:
    assert compare("greater_than", True, "75000", 10000)
    assert compare("equals", True, 5, "5")
    assert not compare("greater_than", False, None, 1)
    assert compare("contains", True, ["vip", "enterprise"], "vip")
    assert compare("contains", True, "TechCorp Inc.", "Corp")
    assert not compare("exists", True, "", None)
    assert not compare("less_than", True, "abc", 3)


def test_contact_tags_operators() -> None:
    evaluator = ConditionEvaluator()
    payload = {"contact": {"tags": ["Enterprise", "VIP"]}}

    assert evaluator.evaluate(_condition({"type": "contact_tags", "config": {"tags": ["vip"]}}), payload)
    assert not evaluator.evaluate(
        _condition({"type": "contact_tags", "config": {"tags": ["vip", "smb"], "operator": "contains_all"}}),
        payload,
    )
    assert evaluator.evaluate(
        _condition({"type": "contact_tags", "config": {"tags": ["smb"], "operator": "contains_none"}}),
        payload,
    )


def test_time_based_condition_uses_payload_timestamp() -> None:
    evaluator = ConditionEvaluator(clock=lambda: NOW)
    condition = _condition({"type": "time_based", "config": {"days": ["weekday"], "time_from": "09:00", "time_to": "17:00"}})

    assert evaluator.evaluate(condition, {"timestamp": "2026-10-19T10:30:00+00:00"})
    assert not evaluator.evaluate(condition, {"timestamp": "2026-10-18T10:30:00+00:00"})
    assert not evaluator.evaluate(condition, {"timestamp": "2026-10-19T18:30:00+00:00"})
    assert evaluator.evaluate(condition, {})


def test_complex_logic_and_validation_conditions() -> None:
    evaluator = ConditionEvaluator()
    payload = {"contact": {"email": "john@techcorp.com", "phone": ""}, "prediction": {"score": 0.8}}
    either = _condition(
        {
            "type": "complex_logic",
            "config": {
                "logic": "or",
                "conditions": [
                    {"type": "data_validation", "config": {"field": "contact.phone"}},
                    {"type": "data_validation", "config": {"field": "contact.email", "rule": "email"}},
                ],
            },
        }
    )
    negated = _condition(
        {
            "type": "complex_logic",
            "config": {"logic": "not", "conditions": [{"type": "machine_learning", "config": {"threshold": 0.5}}]},
        }
    )

    assert evaluator.evaluate(either, payload)
    assert not evaluator.evaluate(negated, payload)


def test_not_logic_requires_exactly_one_condition() -> None:
    with pytest.raises(ValidationError):
        _condition({"type": "complex_logic", "config": {"logic": "not", "conditions": []}})


def test_compare_only_coerces_plain_decimal_strings() -> None:
    assert compare("equals", True, "1.50", 1.5)
    assert compare("equals", True, " -20 ", -20)
    assert not compare("equals", True, "1_000", 1000)
    assert compare("equals", True, "nan", "nan")
    assert not compare("equals", True, "inf", float("inf"))


@pytest.mark.parametrize("value", ["25:00", "99:99", "12:60"])
def test_out_of_range_times_are_rejected(value: str) -> None:
    with pytest.raises(ValidationError):
        _condition({"type": "time_based", "config": {"time_from": value}})
    with pytest.raises(RuleValidationError):
        validate_definition(
            "deal_created",
            {},
            [],
            [{"type": "create_calendar_event", "config": {"title": "Demo", "start_time": value}}],
        )
