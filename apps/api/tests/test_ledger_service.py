from __future__ import annotations

from collections.abc import Generator
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.business.billing.models import Invoice
from app.business.payments.models import Payment
from app.core.config import get_settings
from app.core.database import Base
from app.core.errors import InvalidStateError, LedgerImbalanceError, MissingLedgerAccountsError
from app.platform.ledger.models import LedgerEntry
from app.platform.ledger.schemas import LedgerAccountCreate
from app.platform.ledger.service import LedgerService


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
def clear_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _payment(session: Session, amount: str = "110") -> Payment:
    invoice = Invoice(
        number="INV-2026-001",
        status="posted",
        currency="EUR",
        total=Decimal(amount),
        issue_date=date(2026, 10, 18),
        due_date=date(2026, 11, 1),
    )
    session.add(invoice)
    session.flush()
    payment = Payment(
        invoice_id=invoice.id,
        amount=Decimal(amount),
        currency="EUR",
        method="bank_transfer",
        status="succeeded",
    )
    session.add(payment)
    session.commit()
    return payment


def test_post_payment_writes_balanced_pair(db_session: Session) -> None:
    service = LedgerService()
    service.seed_chart_of_accounts(db_session, organization_id="default")
    payment = _payment(db_session)

    result = service.post_payment(db_session, payment)
    db_session.commit()

    assert result.posted is True
    entries = service.list_entries(db_session, organization_id="default", ref_type="payment", ref_id=str(payment.id))
    assert len(entries) == 2
    assert sum(entry.debit for entry in entries) == sum(entry.credit for entry in entries) == Decimal("110")
    assert all((entry.debit == 0) != (entry.credit == 0) for entry in entries)

    balance = service.trial_balance(db_session, organization_id="default")
    assert balance.balanced is True
    by_code = {line.account_code: line for line in balance.lines}
    assert by_code["1010"].debit == Decimal("110")
    assert by_code["1100"].credit == Decimal("110")


def test_reverse_payment_mirrors_entries(db_session: Session) -> None:
    service = LedgerService()
    service.seed_chart_of_accounts(db_session, organization_id="default")
    payment = _payment(db_session)
    service.post_payment(db_session, payment)

    reversed_ids = service.reverse_payment(db_session, payment.id)
    db_session.commit()

    assert len(reversed_ids) == 2
    reversals = service.list_entries(db_session, organization_id="default", ref_type="payment_reversal")
    assert sorted((entry.debit, entry.credit) for entry in reversals) == [
        (Decimal("0"), Decimal("110")),
        (Decimal("110"), Decimal("0")),
    ]
    balance = service.trial_balance(db_session, organization_id="default")
    assert balance.balanced is True
    assert {line.account_code: line.debit - line.credit for line in balance.lines} == {"1010": 0, "1100": 0}


def test_missing_accounts_skip_posting(db_session: Session) -> None:
    payment = _payment(db_session)

    result = LedgerService().post_payment(db_session, payment)

    assert result.posted is False
    assert result.error == "MissingLedgerAccounts"
    assert result.missing_codes == ["1010", "1100"]
    assert db_session.query(LedgerEntry).count() == 0


def test_missing_accounts_raise_in_strict_mode(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LEDGER_STRICT_ACCOUNTS", "true")
    get_settings.cache_clear()
    payment = _payment(db_session)

    with pytest.raises(MissingLedgerAccountsError) as exc_info:
        LedgerService().post_payment(db_session, payment)
    assert exc_info.value.missing_codes == ["1010", "1100"]


def test_inactive_account_counts_as_missing(db_session: Session) -> None:
    service = LedgerService()
    service.create_account(
        db_session,
        LedgerAccountCreate(code="1010", name="Bank", type="ASSET", is_active=False),
        organization_id="default",
    )
    service.create_account(
        db_session,
        LedgerAccountCreate(code="1100", name="Accounts Receivable", type="ASSET"),
        organization_id="default",
    )

    result = service.post_payment(db_session, _payment(db_session))

    assert result.posted is False
    assert result.missing_codes == ["1010"]


def test_unbalanced_lines_are_rejected() -> None:
    service = LedgerService()
    lines = [
        LedgerEntry(debit=Decimal("100"), credit=Decimal("0")),
        LedgerEntry(debit=Decimal("0"), credit=Decimal("90")),
    ]
    with pytest.raises(LedgerImbalanceError):
        service._assert_balanced(lines)

    with pytest.raises(LedgerImbalanceError):
        service._assert_balanced([LedgerEntry(debit=Decimal("5"), credit=Decimal("5"))])


def test_seed_is_idempotent_and_duplicate_codes_conflict(db_session: Session) -> None:
    service = LedgerService()
    created = service.seed_chart_of_accounts(db_session, organization_id="default")
    again = service.seed_chart_of_accounts(db_session, organization_id="default")

    assert [account.code for account in created] == ["1010", "1100", "2300", "4000"]
    assert again == []
    with pytest.raises(InvalidStateError):
        service.create_account(
            db_session,
            LedgerAccountCreate(code="1010", name="Second bank", type="ASSET"),
            organization_id="default",
        )
