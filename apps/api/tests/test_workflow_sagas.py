from __future__ import annotations

import threading
import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.business.billing.models import Invoice, InvoiceItem
from app.business.payments.models import Payment
from app.business.revenue.models import Quote, QuoteItem, SalesOrder, SalesOrderItem
from app.core.config import get_settings
from app.core.database import Base
from app.core.errors import InvalidStateError, MissingLedgerAccountsError, NotFoundError, PartialSagaFailure
from app.crm.models import CRMActivity, CRMCompany, CRMContact, CRMDeal, CRMLead
from app.platform.ledger.models import LedgerEntry
from app.platform.ledger.service import ledger_service
from app.workflow.models import SagaRun
from app.workflow.schemas import LeadConvertOptions, PaymentCreate
from app.workflow.service import WorkflowService


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


class _FailingLedger:
    def post_payment(self, session: Session, payment: Payment):
        raise RuntimeError("ledger unavailable")

    def reverse_payment(self, session: Session, payment_id: uuid.UUID) -> list[uuid.UUID]:
        return []


def _lead(session: Session, **overrides) -> CRMLead:
    values = {
        "name": "John Smith",
        "email": "john@techcorp.com",
        "company_name": "TechCorp",
        "title": "CTO",
        "industry": "Software",
        "company_size": "50-200",
        "source": "website",
        "status": "qualified",
        "score": 80,
    }
    values.update(overrides)
    lead = CRMLead(**values)
    session.add(lead)
    session.commit()
    return lead


def _quote(session: Session, number: str = "Q-1", status: str = "accepted") -> Quote:
    quote = Quote(
        number=number,
        status=status,
        currency="EUR",
        subtotal=Decimal("100"),
        tax_total=Decimal("10"),
        total=Decimal("110"),
    )
    quote.items.append(
        QuoteItem(position=1, name="Widget", quantity=Decimal("2"), unit_price=Decimal("50"), tax_rate=Decimal("10"))
    )
    session.add(quote)
    session.commit()
    return quote


def _invoice(session: Session, service: WorkflowService) -> Invoice:
    quote = _quote(session)
    order = service.confirm_quote_to_sales_order(session, quote.id)
    result = service.create_invoice_from_sales_order(session, order.sales_order_id)
    invoice = session.get(Invoice, result.invoice_id)
    assert invoice is not None
    return invoice


def _latest_run(session: Session, saga: str) -> SagaRun:
    run = session.scalar(select(SagaRun).where(SagaRun.saga == saga).order_by(SagaRun.started_at.desc()))
    assert run is not None
    return run


def test_convert_lead_creates_company_contact_and_deal(db_session: Session) -> None:
    lead = _lead(db_session)

    result = WorkflowService().convert_lead_to_deal(db_session, lead.id, actor_user_id="user-1")

    assert result.idempotent is False
    company = db_session.get(CRMCompany, result.company_id)
    contact = db_session.get(CRMContact, result.contact_id)
    deal = db_session.get(CRMDeal, result.deal_id)
    assert company is not None and company.name == "TechCorp"
    assert company.domain == "techcorp.com"
    assert contact is not None
    assert (contact.first_name, contact.last_name) == ("John", "Smith")
    assert contact.company_id == company.id
    assert deal is not None
    assert deal.title == "TechCorp - John Smith"
    assert deal.value == Decimal("50000")
    assert deal.currency == "EUR"
    assert deal.probability == 25
    assert deal.stage == "qualified"
    assert deal.contact_id == contact.id
    assert deal.company_id == company.id

    db_session.refresh(lead)
    assert lead.status == "converted"
    assert lead.metadata_json["converted_to_deal_id"] == str(deal.id)

    activity = db_session.scalar(select(CRMActivity).where(CRMActivity.entity_type == "deal"))
    assert activity is not None
    assert activity.action == "created"
    assert activity.actor_user_id == "user-1"
    recorded = [item for item in events.published_events if item["event_type"] == "activity.recorded"]
    assert recorded and recorded[-1]["payload"]["entity_id"] == str(deal.id)

    run = _latest_run(db_session, "convert_lead_to_deal")
    assert run.status == "completed"
    assert [step["name"] for step in run.steps] == [
        "resolve_company",
        "resolve_contact",
        "create_deal",
        "mark_lead_converted",
        "record_activity",
    ]


def test_convert_lead_reuses_company_and_contact(db_session: Session) -> None:
    service = WorkflowService()
    first = service.convert_lead_to_deal(db_session, _lead(db_session).id)
    second = service.convert_lead_to_deal(
        db_session,
        _lead(db_session, name="Jane Doe", email="jane@techcorp.com").id,
    )
    third = service.convert_lead_to_deal(db_session, _lead(db_session, name="Johnny Smith").id)

    assert first.company_id == second.company_id == third.company_id
    assert first.contact_id == third.contact_id
    assert second.contact_id != first.contact_id
    assert db_session.scalar(select(func.count()).select_from(CRMCompany)) == 1
    assert db_session.scalar(select(func.count()).select_from(CRMContact)) == 2
    assert db_session.scalar(select(func.count()).select_from(CRMDeal)) == 3


def test_convert_lead_reuses_rows_written_after_the_lookup(
    db_session: Session, monkeypatch: pytest.MonkeyPatch
) -> None:
    company = CRMCompany(name="TechCorp")
    db_session.add(company)
    db_session.flush()
    contact = CRMContact(first_name="John", last_name="Smith", email="john@techcorp.com")
    db_session.add(contact)
    db_session.commit()
    lead = _lead(db_session)

    scalar = db_session.scalar
    stale_lookups: set[type] = set()

    def stale_first_lookup(statement, *args, **kwargs):
        entity = statement.column_descriptions[0]["entity"] if hasattr(statement, "column_descriptions") else None
        if entity in (CRMCompany, CRMContact) and entity not in stale_lookups:
            stale_lookups.add(entity)
            return None
        return scalar(statement, *args, **kwargs)

    monkeypatch.setattr(db_session, "scalar", stale_first_lookup)

    result = WorkflowService().convert_lead_to_deal(db_session, lead.id)

    assert stale_lookups == {CRMCompany, CRMContact}
    assert result.company_id == company.id
    assert result.contact_id == contact.id
    monkeypatch.undo()
    assert db_session.scalar(select(func.count()).select_from(CRMCompany)) == 1
    assert db_session.scalar(select(func.count()).select_from(CRMContact)) == 1
    db_session.refresh(contact)
    assert contact.company_id == company.id
    assert db_session.get(CRMDeal, result.deal_id).company_id == company.id
    assert _latest_run(db_session, "convert_lead_to_deal").status == "completed"


def test_concurrent_conversions_share_company_and_contact(tmp_path) -> None:
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'sales.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as setup:
        lead_ids = [_lead(setup).id, _lead(setup, name="Johnny Smith").id]

    service = WorkflowService()
    start = threading.Barrier(len(lead_ids))
    deal_ids: list[uuid.UUID] = []
    errors: list[BaseException] = []

    def convert(lead_id: uuid.UUID) -> None:
        with SessionLocal() as session:
            start.wait()
            try:
                deal_ids.append(service.convert_lead_to_deal(session, lead_id).deal_id)
            except Exception as exc:
                errors.append(exc)

    threads = [threading.Thread(target=convert, args=(lead_id,)) for lead_id in lead_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    try:
        assert errors == []
        assert len(set(deal_ids)) == 2
        with SessionLocal() as check:
            assert check.scalar(select(func.count()).select_from(CRMCompany)) == 1
            assert check.scalar(select(func.count()).select_from(CRMContact)) == 1
            deals = check.scalars(select(CRMDeal)).all()
            assert len({deal.contact_id for deal in deals}) == 1
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


def test_convert_lead_twice_returns_the_same_deal(db_session: Session) -> None:
    service = WorkflowService()
    lead = _lead(db_session)

    first = service.convert_lead_to_deal(db_session, lead.id)
    again = service.convert_lead_to_deal(db_session, lead.id)

    assert again.idempotent is True
    assert again.deal_id == first.deal_id
    assert db_session.scalar(select(func.count()).select_from(CRMDeal)) == 1


def test_convert_lead_without_company_uses_lead_name(db_session: Session) -> None:
    lead = _lead(db_session, name="Solo Buyer", email=None, company_name=None)

    result = WorkflowService().convert_lead_to_deal(db_session, lead.id)

    deal = db_session.get(CRMDeal, result.deal_id)
    assert deal is not None and deal.title == "Solo Buyer"
    assert result.company_id is None
    contact = db_session.get(CRMContact, result.contact_id)
    assert contact is not None and contact.first_name == "Solo"


def test_convert_lead_options_override_defaults(db_session: Session) -> None:
    lead = _lead(db_session)
    options = LeadConvertOptions(deal_title="Renewal", estimated_value=Decimal("1200"), stage="proposal", create_contact=False)

    result = WorkflowService().convert_lead_to_deal(db_session, lead.id, options)

    deal = db_session.get(CRMDeal, result.deal_id)
    assert deal is not None
    assert (deal.title, deal.value, deal.stage) == ("Renewal", Decimal("1200"), "proposal")
    assert result.contact_id is None
    assert deal.contact_id is None


def test_convert_lost_lead_is_rejected_and_logged(db_session: Session) -> None:
    lead = _lead(db_session, status="lost")

    with pytest.raises(InvalidStateError):
        WorkflowService().convert_lead_to_deal(db_session, lead.id)

    run = _latest_run(db_session, "convert_lead_to_deal")
    assert run.status == "failed"
    assert (run.steps[-1]["name"], run.steps[-1]["status"]) == ("prepare", "failed")
    assert db_session.scalar(select(func.count()).select_from(CRMDeal)) == 0


def test_convert_missing_lead_raises_not_found(db_session: Session) -> None:
    with pytest.raises(NotFoundError) as exc_info:
        WorkflowService().convert_lead_to_deal(db_session, uuid.uuid4())
    assert exc_info.value.entity_type == "lead"


def test_confirm_quote_clones_totals_and_items(db_session: Session) -> None:
    quote = _quote(db_session)

    result = WorkflowService().confirm_quote_to_sales_order(db_session, quote.id)

    year = datetime.now(timezone.utc).year
    assert result.number == f"SO-{year}-001"
    order = db_session.get(SalesOrder, result.sales_order_id)
    assert order is not None
    assert order.status == "confirmed"
    assert order.quote_id == quote.id
    assert (order.subtotal, order.tax_total, order.total) == (Decimal("100"), Decimal("10"), Decimal("110"))
    items = db_session.scalars(select(SalesOrderItem).where(SalesOrderItem.sales_order_id == order.id)).all()
    assert [(item.name, item.quantity, item.unit_price) for item in items] == [("Widget", Decimal("2"), Decimal("50"))]

    db_session.refresh(quote)
    assert quote.status == "confirmed"


def test_sales_order_numbers_are_sequential(db_session: Session) -> None:
    service = WorkflowService()
    first = service.confirm_quote_to_sales_order(db_session, _quote(db_session, "Q-1").id)
    second = service.confirm_quote_to_sales_order(db_session, _quote(db_session, "Q-2").id)

    year = datetime.now(timezone.utc).year
    assert (first.number, second.number) == (f"SO-{year}-001", f"SO-{year}-002")


def test_confirm_quote_twice_is_idempotent(db_session: Session) -> None:
    service = WorkflowService()
    quote = _quote(db_session)

    first = service.confirm_quote_to_sales_order(db_session, quote.id)
    again = service.confirm_quote_to_sales_order(db_session, quote.id)

    assert again.idempotent is True
    assert again.sales_order_id == first.sales_order_id
    assert again.number == first.number
    assert db_session.scalar(select(func.count()).select_from(SalesOrder)) == 1


def test_confirm_rejected_quote_fails(db_session: Session) -> None:
    quote = _quote(db_session, status="rejected")

    with pytest.raises(InvalidStateError):
        WorkflowService().confirm_quote_to_sales_order(db_session, quote.id)

    assert db_session.scalar(select(func.count()).select_from(SalesOrder)) == 0


def test_invoice_from_sales_order_copies_order(db_session: Session) -> None:
    service = WorkflowService()
    order = service.confirm_quote_to_sales_order(db_session, _quote(db_session).id)

    result = service.create_invoice_from_sales_order(db_session, order.sales_order_id)

    year = datetime.now(timezone.utc).year
    assert result.number == f"INV-{year}-001"
    invoice = db_session.get(Invoice, result.invoice_id)
    assert invoice is not None
    assert invoice.status == "posted"
    assert invoice.currency == "EUR"
    assert invoice.total == Decimal("110")
    assert invoice.due_date - invoice.issue_date == timedelta(days=14)
    items = db_session.scalars(select(InvoiceItem).where(InvoiceItem.invoice_id == invoice.id)).all()
    assert [(item.name, item.quantity) for item in items] == [("Widget", Decimal("2"))]

    sales_order = db_session.get(SalesOrder, order.sales_order_id)
    assert sales_order is not None and sales_order.status == "fulfilled"

    again = service.create_invoice_from_sales_order(db_session, order.sales_order_id)
    assert again.idempotent is True
    assert again.invoice_id == result.invoice_id


def test_invoice_for_cancelled_order_fails(db_session: Session) -> None:
    service = WorkflowService()
    order = service.confirm_quote_to_sales_order(db_session, _quote(db_session).id)
    row = db_session.get(SalesOrder, order.sales_order_id)
    row.status = "cancelled"
    db_session.commit()

    with pytest.raises(InvalidStateError):
        service.create_invoice_from_sales_order(db_session, order.sales_order_id)


def test_full_payment_marks_invoice_paid_and_posts_ledger(db_session: Session) -> None:
    ledger_service.seed_chart_of_accounts(db_session, organization_id="default")
    service = WorkflowService()
    invoice = _invoice(db_session, service)

    result = service.record_payment(
        db_session,
        PaymentCreate(invoice_id=invoice.id, amount=Decimal("110"), currency="EUR", method="bank_transfer"),
    )

    assert result.invoice_status == "paid"
    assert result.total_paid == Decimal("110")
    assert result.ledger.posted is True
    assert len(result.ledger.entry_ids) == 2

    rows = db_session.scalars(select(LedgerEntry).where(LedgerEntry.ref_id == str(result.payment_id))).all()
    assert sorted((row.debit, row.credit) for row in rows) == [(Decimal("0"), Decimal("110")), (Decimal("110"), Decimal("0"))]
    assert sum(row.debit for row in rows) == sum(row.credit for row in rows)


def test_partial_payment_leaves_invoice_open(db_session: Session) -> None:
    ledger_service.seed_chart_of_accounts(db_session, organization_id="default")
    service = WorkflowService()
    invoice = _invoice(db_session, service)

    first = service.record_payment(
        db_session,
        PaymentCreate(invoice_id=invoice.id, amount=Decimal("50"), currency="EUR", method="card"),
    )
    assert first.invoice_status == "posted"
    assert first.total_paid == Decimal("50")

    second = service.record_payment(
        db_session,
        PaymentCreate(invoice_id=invoice.id, amount=Decimal("60"), currency="EUR", method="card"),
    )
    assert second.invoice_status == "paid"
    assert second.total_paid == Decimal("110")


def test_payment_without_ledger_accounts_is_recorded_unposted(db_session: Session) -> None:
    service = WorkflowService()
    invoice = _invoice(db_session, service)

    result = service.record_payment(
        db_session,
        PaymentCreate(invoice_id=invoice.id, amount=Decimal("110"), currency="EUR", method="card"),
    )

    assert result.invoice_status == "paid"
    assert result.ledger.posted is False
    assert result.ledger.error == "MissingLedgerAccounts"
    assert result.ledger.missing_codes == ["1010", "1100"]
    assert db_session.scalar(select(func.count()).select_from(LedgerEntry)) == 0


def test_strict_ledger_rolls_back_payment(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LEDGER_STRICT_ACCOUNTS", "true")
    get_settings.cache_clear()
    service = WorkflowService()
    invoice = _invoice(db_session, service)

    with pytest.raises(MissingLedgerAccountsError):
        service.record_payment(
            db_session,
            PaymentCreate(invoice_id=invoice.id, amount=Decimal("110"), currency="EUR", method="card"),
        )

    assert db_session.scalar(select(func.count()).select_from(Payment)) == 0
    assert db_session.get(Invoice, invoice.id).status == "posted"


def test_payment_for_missing_invoice_raises(db_session: Session) -> None:
    with pytest.raises(NotFoundError):
        WorkflowService().record_payment(
            db_session,
            PaymentCreate(invoice_id=uuid.uuid4(), amount=Decimal("10"), currency="EUR", method="card"),
        )


def test_atomic_failure_rolls_back_every_step(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    ledger_service.seed_chart_of_accounts(db_session, organization_id="default")
    service = WorkflowService()
    invoice = _invoice(db_session, service)
    events.published_events.clear()
    monkeypatch.setattr("app.workflow.service.ledger_service", _FailingLedger())

    with pytest.raises(RuntimeError, match="ledger unavailable"):
        service.record_payment(
            db_session,
            PaymentCreate(invoice_id=invoice.id, amount=Decimal("110"), currency="EUR", method="card"),
        )

    assert db_session.scalar(select(func.count()).select_from(Payment)) == 0
    assert db_session.get(Invoice, invoice.id).status == "posted"
    assert not [item for item in events.published_events if item["event_type"] == "activity.recorded"]

    run = _latest_run(db_session, "record_payment")
    assert run.status == "failed"
    assert run.mode == "atomic"
    assert run.error == "ledger unavailable"
    assert [(step["name"], step["status"]) for step in run.steps] == [
        ("insert_payment", "rolled_back"),
        ("update_invoice_status", "rolled_back"),
        ("post_ledger", "failed"),
    ]


def test_step_mode_failure_compensates_committed_steps(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SAGA_MODE", "step")
    get_settings.cache_clear()
    service = WorkflowService()
    invoice = _invoice(db_session, service)
    monkeypatch.setattr("app.workflow.service.ledger_service", _FailingLedger())

    with pytest.raises(PartialSagaFailure) as exc_info:
        service.record_payment(
            db_session,
            PaymentCreate(invoice_id=invoice.id, amount=Decimal("110"), currency="EUR", method="card"),
        )

    failure = exc_info.value
    assert failure.failed_step == "post_ledger"
    assert failure.committed_steps == ["insert_payment", "update_invoice_status"]
    assert failure.compensated_steps == ["update_invoice_status", "insert_payment"]
    assert failure.compensation_errors == {}

    payment = db_session.scalar(select(Payment))
    assert payment is not None and payment.status == "failed"
    assert db_session.get(Invoice, invoice.id).status == "posted"

    run = _latest_run(db_session, "record_payment")
    assert run.status == "compensated"
    assert run.mode == "step"


def test_saga_runs_are_listed_newest_first(db_session: Session) -> None:
    service = WorkflowService()
    lead = _lead(db_session)
    service.convert_lead_to_deal(db_session, lead.id)

    runs = service.list_saga_runs(db_session, subject_id=str(lead.id))

    assert len(runs) == 1
    assert runs[0].saga == "convert_lead_to_deal"
    assert service.get_saga_run(db_session, runs[0].id).status == "completed"
    with pytest.raises(NotFoundError):
        service.get_saga_run(db_session, uuid.uuid4())
