from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.auth import ROLE_PERMISSIONS, ActorUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import CRMTask
from app.main import app


RULE = {
    "name": "Welcome new contacts",
    "trigger_type": "contact_created",
    "conditions": [{"type": "contact_tags", "config": {"tags": ["enterprise"]}}],
    "actions": [{"type": "create_task", "config": {"title": "Call {{contact.name}}", "due_date": "tomorrow"}}],
}


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_state() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def permissions() -> set[str]:
    return set(ROLE_PERMISSIONS["user"])


@pytest.fixture()
def client(db_session: Session, permissions: set[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions=permissions,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_rule(client: TestClient, **overrides) -> dict:
    response = client.post("/api/automations/rules", json={**RULE, **overrides})
    assert response.status_code == 201
    return response.json()


def test_create_and_read_rule(client: TestClient) -> None:
    rule = _create_rule(client)

    assert rule["conditions"] == RULE["conditions"]
    assert rule["created_by"] == "user-1"
    assert (rule["execution_count"], rule["success_count"], rule["failure_count"]) == (0, 0, 0)

    fetched = client.get(f"/api/automations/rules/{rule['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["name"] == "Welcome new contacts"

    listed = client.get("/api/automations/rules", params={"trigger_type": "contact_created"})
    assert [item["id"] for item in listed.json()] == [rule["id"]]


def test_invalid_rule_returns_error_envelope(client: TestClient) -> None:
    response = client.post(
        "/api/automations/rules",
        json={**RULE, "actions": [{"type": "create_task", "config": {}}]},
        headers={"X-Correlation-Id": "rule-invalid-1"},
    )

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "rule_validation_error"
    assert body["correlation_id"] == "rule-invalid-1"
    assert body["details"][0]["type"] == "missing"

    unknown = client.post("/api/automations/rules", json={**RULE, "trigger_type": "deal_exploded"})
    assert unknown.status_code == 422
    assert unknown.json()["code"] == "unknown_trigger_type"


def test_invoke_rule_with_fixture_payload(client: TestClient, db_session: Session) -> None:
    rule = _create_rule(client)

    response = client.post(f"/api/automations/rules/{rule['id']}/invoke", headers={"X-Correlation-Id": "invoke-1"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Rule executed successfully"
    assert body["results"][0]["type"] == "create_task"
    task = db_session.scalar(select(CRMTask))
    assert task is not None and task.title == "Call John Smith"

    logs = client.get("/api/automations/logs", params={"rule_id": rule["id"]})
    assert logs.status_code == 200
    assert logs.json()[0]["id"] == body["log_id"]
    assert logs.json()[0]["correlation_id"] == "invoke-1"

    counters = client.get(f"/api/automations/rules/{rule['id']}").json()
    assert (counters["execution_count"], counters["success_count"]) == (1, 1)


def test_invoke_with_explicit_trigger_data(client: TestClient) -> None:
    rule = _create_rule(client)

    response = client.post(
        f"/api/automations/rules/{rule['id']}/invoke",
        json={"trigger_data": {"contact": {"name": "Ann", "tags": ["smb"]}}},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["conditions_matched"] is False
    assert body["message"] == "Conditions not met"
    assert body["conditions"] == [{"index": 0, "type": "contact_tags", "passed": False, "error": None}]


def test_dispatch_event_endpoint(client: TestClient) -> None:
    rule = _create_rule(client)

    response = client.post(
        "/api/automations/events",
        json={"trigger_type": "contact_created", "payload": {"contact": {"name": "Ann", "tags": ["Enterprise"]}}},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["matched_rules"] == 1
    assert body["results"][0]["rule_id"] == rule["id"]
    assert body["results"][0]["success"] is True

    unknown = client.post("/api/automations/events", json={"trigger_type": "deal_exploded", "payload": {}})
    assert unknown.status_code == 422
    assert unknown.json()["code"] == "unknown_trigger_type"


def test_update_and_delete_rule(client: TestClient) -> None:
    rule = _create_rule(client)

    patched = client.patch(f"/api/automations/rules/{rule['id']}", json={"is_active": False})
    assert patched.status_code == 200
    assert patched.json()["is_active"] is False

    deleted = client.delete(f"/api/automations/rules/{rule['id']}")
    assert deleted.status_code == 204
    missing = client.get(f"/api/automations/rules/{rule['id']}")
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"


def test_log_listing_is_bounded(client: TestClient) -> None:
    rule = _create_rule(client)
    for _ in range(3):
        assert client.post(f"/api/automations/rules/{rule['id']}/invoke").status_code == 200

    assert len(client.get("/api/automations/logs").json()) == 3
    assert len(client.get("/api/automations/logs", params={"limit": 2}).json()) == 2
    assert client.get("/api/automations/logs", params={"limit": 0}).status_code == 422


def test_catalog_and_fixtures(client: TestClient) -> None:
    catalog = client.get("/api/automations/catalog")
    assert catalog.status_code == 200
    body = catalog.json()
    assert len(body["triggers"]) == 12
    assert len(body["conditions"]) == 10
    assert len(body["actions"]) == 13
    assert "greater_than" in body["operators"]

    fixture = client.get("/api/automations/fixtures/deal_created")
    assert fixture.status_code == 200
    assert fixture.json()["payload"]["deal"]["id"] == "deal-123"

    unknown = client.get("/api/automations/fixtures/deal_exploded")
    assert unknown.status_code == 422


@pytest.mark.parametrize("permissions", [set(ROLE_PERMISSIONS["guest"])])
def test_guest_can_read_but_not_manage(client: TestClient) -> None:
    assert client.get("/api/automations/rules").status_code == 200
    assert client.get("/api/automations/catalog").status_code == 200

    response = client.post("/api/automations/rules", json=RULE)
    assert response.status_code == 403
    assert response.json()["code"] == "rule_create_failed"

    dispatched = client.post("/api/automations/events", json={"trigger_type": "deal_created", "payload": {}})
    assert dispatched.status_code == 403


def test_unknown_rule_invoke_returns_not_found(client: TestClient) -> None:
    response = client.post(f"/api/automations/rules/{uuid.uuid4()}/invoke")
    assert response.status_code == 404
    assert response.json()["details"]["entity_type"] == "automation_rule"
