from __future__ import annotations

import uuid
from collections.abc import Generator
from decimal import Decimal

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.automation.models import ExecutionLog
from app.business.revenue.models import Quote
from app.core.auth import ROLE_PERMISSIONS, ActorUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import CRMLead
from app.main import app
from app.workflow.models import SagaRun


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
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions=set(ROLE_PERMISSIONS["user"]),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/automations/rules/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/workflows/runs/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_saga_run_and_activity_events_carry_correlation_id(client: TestClient, db_session: Session) -> None:
    lead = CRMLead(name="Jane Doe", email="jane@acme.test", company_name="Acme", status="qualified")
    db_session.add(lead)
    db_session.commit()

    response = client.post(f"/api/workflows/leads/{lead.id}/convert", headers={"X-Correlation-Id": "corr-saga-1"})
    assert response.status_code == 200

    run = db_session.scalar(select(SagaRun).where(SagaRun.saga == "convert_lead_to_deal"))
    assert run is not None
    assert run.correlation_id == "corr-saga-1"

    activity_events = [item for item in events.published_events if item.get("event_type") == "activity.recorded"]
    assert activity_events
    assert all(item.get("correlation_id") == "corr-saga-1" for item in activity_events)


def test_execution_log_and_rule_event_carry_correlation_id(client: TestClient, db_session: Session) -> None:
    rule = client.post(
        "/api/automations/rules",
        json={
            "name": "Follow up new deals",
            "trigger_type": "deal_created",
            "actions": [{"type": "create_task", "config": {"title": "Follow up {{deal.title}}"}}],
        },
    )
    assert rule.status_code == 201

    response = client.post(
        f"/api/automations/rules/{rule.json()['id']}/invoke",
        headers={"X-Correlation-Id": "corr-rule-1"},
    )
    assert response.status_code == 200

    log = db_session.scalar(select(ExecutionLog))
    assert log is not None
    assert log.correlation_id == "corr-rule-1"

    executed = [item for item in events.published_events if item.get("event_type") == "automation.rule.executed"]
    assert executed
    assert executed[-1].get("correlation_id") == "corr-rule-1"


def test_failed_saga_error_envelope_keeps_correlation_id(client: TestClient, db_session: Session) -> None:
    quote = Quote(number="Q-9", status="rejected", currency="EUR", subtotal=Decimal("1"), total=Decimal("1"))
    db_session.add(quote)
    db_session.commit()

    response = client.post(f"/api/workflows/quotes/{quote.id}/confirm", headers={"X-Correlation-Id": "corr-fail-1"})

    assert response.status_code == 409
    assert response.json()["code"] == "invalid_state"
    assert response.json()["correlation_id"] == "corr-fail-1"
    run = db_session.scalar(select(SagaRun).where(SagaRun.saga == "confirm_quote_to_sales_order"))
    assert run is not None
    assert run.status == "failed"
    assert run.correlation_id == "corr-fail-1"
