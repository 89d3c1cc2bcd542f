from __future__ import annotations

import os
from collections.abc import Generator
from decimal import Decimal

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.business.revenue.models import Quote, QuoteItem
from app.core.auth import ROLE_PERMISSIONS, ActorUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import CRMLead
from app.main import app
from app.otel import setup_inmemory_otel


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


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


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.get("/api/automations/catalog", headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_saga_spans_cover_each_step(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    lead = CRMLead(name="Jane Doe", email="jane@acme.test", company_name="Acme", status="qualified")
    db_session.add(lead)
    db_session.commit()

    response = client.post(f"/api/workflows/leads/{lead.id}/convert", headers={"X-Correlation-Id": "otel-saga-1"})
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    saga_spans = [span for span in spans if span.name == "saga.convert_lead_to_deal"]
    assert len(saga_spans) == 1
    assert saga_spans[0].attributes.get("correlation_id") == "otel-saga-1"
    assert saga_spans[0].attributes.get("subject_id") == str(lead.id)

    step_spans = [span for span in spans if span.name.startswith("saga.convert_lead_to_deal.")]
    assert step_spans
    assert all(span.parent is not None and span.parent.span_id == saga_spans[0].context.span_id for span in step_spans)
    assert all(span.attributes.get("correlation_id") == "otel-saga-1" for span in step_spans)


def test_automation_spans_contain_rule_and_correlation(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    rule = client.post(
        "/api/automations/rules",
        json={
            "name": "Follow up new deals",
            "trigger_type": "deal_created",
            "actions": [{"type": "create_task", "config": {"title": "Follow up {{deal.title}}"}}],
        },
    )
    assert rule.status_code == 201
    span_exporter.clear()

    response = client.post(
        f"/api/automations/rules/{rule.json()['id']}/invoke",
        headers={"X-Correlation-Id": "otel-rule-1"},
    )
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    rule_spans = [span for span in spans if span.name == "automation.rule.run"]
    assert len(rule_spans) == 1
    assert rule_spans[0].attributes.get("rule_id") == rule.json()["id"]
    assert rule_spans[0].attributes.get("trigger_type") == "deal_created"
    assert rule_spans[0].attributes.get("correlation_id") == "otel-rule-1"

    action_spans = [span for span in spans if span.name == "automation.action.create_task"]
    assert len(action_spans) == 1
    assert action_spans[0].attributes.get("correlation_id") == "otel-rule-1"


def test_failed_saga_span_records_exception(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    quote = Quote(number="Q-X", status="expired", currency="EUR", subtotal=Decimal("5"), total=Decimal("5"))
    quote.items.append(QuoteItem(position=1, name="Seat", quantity=Decimal("1"), unit_price=Decimal("5")))
    db_session.add(quote)
    db_session.commit()

    response = client.post(f"/api/workflows/quotes/{quote.id}/confirm", headers={"X-Correlation-Id": "otel-fail-1"})
    assert response.status_code == 409

    saga_spans = [span for span in span_exporter.get_finished_spans() if span.name == "saga.confirm_quote_to_sales_order"]
    assert len(saga_spans) == 1
    assert not saga_spans[0].status.is_ok
    assert any(event.name == "exception" for event in saga_spans[0].events)
