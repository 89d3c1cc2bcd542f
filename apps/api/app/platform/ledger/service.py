from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import Select, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.business.payments.models import Payment
from app.context import get_correlation_id
from app.core.config import get_settings
from app.core.errors import InvalidStateError, LedgerImbalanceError, MissingLedgerAccountsError
from app.metrics import (
    observe_ledger_entries_posted,
    observe_ledger_post_failure,
    observe_ledger_posting_skipped,
)
from app.platform.ledger.models import LedgerAccount, LedgerEntry
from app.platform.ledger.schemas import (
    LedgerAccountCreate,
    LedgerAccountRead,
    LedgerEntryRead,
    LedgerPostingResult,
    TrialBalanceLine,
    TrialBalanceRead,
)


logger = logging.getLogger("app.ledger")

DEFAULT_CHART_OF_ACCOUNTS = [
    ("1010", "Bank", "ASSET"),
    ("1100", "Accounts Receivable", "ASSET"),
    ("2300", "Tax Payable", "LIABILITY"),
    ("4000", "Revenue", "REVENUE"),
]


@dataclass(slots=True)
class LedgerService:
    def post_payment(self, session: Session, payment: Payment) -> LedgerPostingResult:
        """Debit bank and credit receivables for a succeeded payment. Flushes, never commits."""
        settings = get_settings()
        bank_code = settings.ledger_bank_account_code
        receivable_code = settings.ledger_receivable_account_code

        accounts = session.scalars(
            select(LedgerAccount).where(
                LedgerAccount.organization_id == payment.organization_id,
                LedgerAccount.code.in_([bank_code, receivable_code]),
                LedgerAccount.is_active.is_(True),
            )
        ).all()
        by_code = {account.code: account for account in accounts}
        missing = [code for code in (bank_code, receivable_code) if code not in by_code]
        if missing:
            observe_ledger_posting_skipped("missing_accounts")
            logger.warning(
                "ledger.posting_skipped",
                extra={
                    "ref_type": "payment",
                    "ref_id": str(payment.id),
                    "missing_codes": missing,
                    "status": "skipped",
                },
            )
            if settings.ledger_strict_accounts:
                observe_ledger_post_failure("missing_accounts")
                raise MissingLedgerAccountsError(missing)
            return LedgerPostingResult(posted=False, error="MissingLedgerAccounts", missing_codes=missing)

        amount = self._q(payment.amount)
        correlation_id = get_correlation_id()
        entries = [
            LedgerEntry(
                organization_id=payment.organization_id,
                account_id=by_code[bank_code].id,
                ref_type="payment",
                ref_id=str(payment.id),
                debit=amount,
                credit=Decimal("0"),
                currency=payment.currency,
                memo=f"Payment received via {payment.method}",
                correlation_id=correlation_id,
            ),
            LedgerEntry(
                organization_id=payment.organization_id,
                account_id=by_code[receivable_code].id,
                ref_type="payment",
                ref_id=str(payment.id),
                debit=Decimal("0"),
                credit=amount,
                currency=payment.currency,
                memo="Payment received",
                correlation_id=correlation_id,
            ),
        ]
        self._assert_balanced(entries)

        session.add_all(entries)
        session.flush()
        observe_ledger_entries_posted(len(entries))
        logger.info(
            "ledger.payment_posted",
            extra={"ref_type": "payment", "ref_id": str(payment.id), "status": "posted"},
        )
        return LedgerPostingResult(posted=True, entry_ids=[entry.id for entry in entries])

    def reverse_payment(self, session: Session, payment_id: uuid.UUID) -> list[uuid.UUID]:
        """Post the mirror image of a payment's entries under ref_type `payment_reversal`."""
        rows = session.scalars(
            select(LedgerEntry).where(LedgerEntry.ref_type == "payment", LedgerEntry.ref_id == str(payment_id))
        ).all()
        if not rows:
            return []

        correlation_id = get_correlation_id()
        reversals = [
            LedgerEntry(
                organization_id=row.organization_id,
                account_id=row.account_id,
                ref_type="payment_reversal",
                ref_id=str(payment_id),
                debit=row.credit,
                credit=row.debit,
                currency=row.currency,
                memo=f"Reversal: {row.memo}" if row.memo else "Reversal",
                correlation_id=correlation_id,
            )
            for row in rows
        ]
        self._assert_balanced(reversals)
        session.add_all(reversals)
        session.flush()
        observe_ledger_entries_posted(len(reversals))
        logger.info(
            "ledger.payment_reversed",
            extra={"ref_type": "payment_reversal", "ref_id": str(payment_id), "status": "reversed"},
        )
        return [entry.id for entry in reversals]

    def create_account(self, session: Session, dto: LedgerAccountCreate, *, organization_id: str) -> LedgerAccountRead:
        account = LedgerAccount(organization_id=organization_id, **dto.model_dump(mode="python"))
        session.add(account)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise InvalidStateError("ledger account already exists", details={"code": dto.code})
        session.refresh(account)
        return LedgerAccountRead.model_validate(account)

    def list_accounts(self, session: Session, *, organization_id: str) -> list[LedgerAccountRead]:
        rows = session.scalars(
            select(LedgerAccount)
            .where(LedgerAccount.organization_id == organization_id)
            .order_by(LedgerAccount.code.asc())
        ).all()
        return [LedgerAccountRead.model_validate(row) for row in rows]

    def list_entries(
        self,
        session: Session,
        *,
        organization_id: str,
        ref_type: str | None = None,
        ref_id: str | None = None,
    ) -> list[LedgerEntryRead]:
        stmt: Select[tuple[LedgerEntry]] = select(LedgerEntry).where(LedgerEntry.organization_id == organization_id)
        if ref_type is not None:
            stmt = stmt.where(LedgerEntry.ref_type == ref_type)
        if ref_id is not None:
            stmt = stmt.where(LedgerEntry.ref_id == ref_id)
        rows = session.scalars(stmt.order_by(LedgerEntry.created_at.asc(), LedgerEntry.debit.desc())).all()
        return [LedgerEntryRead.model_validate(row) for row in rows]

    def trial_balance(self, session: Session, *, organization_id: str) -> TrialBalanceRead:
        rows = session.execute(
            select(
                LedgerAccount.code,
                LedgerAccount.name,
                func.coalesce(func.sum(LedgerEntry.debit), 0),
                func.coalesce(func.sum(LedgerEntry.credit), 0),
            )
            .join(LedgerEntry, LedgerEntry.account_id == LedgerAccount.id)
            .where(LedgerAccount.organization_id == organization_id)
            .group_by(LedgerAccount.code, LedgerAccount.name)
            .order_by(LedgerAccount.code.asc())
        ).all()

        lines = [
            TrialBalanceLine(account_code=code, account_name=name, debit=self._q(debit), credit=self._q(credit))
            for code, name, debit, credit in rows
        ]
        total_debit = self._q(sum((line.debit for line in lines), Decimal("0")))
        total_credit = self._q(sum((line.credit for line in lines), Decimal("0")))
        return TrialBalanceRead(
            lines=lines,
            total_debit=total_debit,
            total_credit=total_credit,
            balanced=total_debit == total_credit,
        )

    def seed_chart_of_accounts(self, session: Session, *, organization_id: str) -> list[LedgerAccountRead]:
        existing_codes = set(
            session.scalars(select(LedgerAccount.code).where(LedgerAccount.organization_id == organization_id)).all()
        )

        created: list[LedgerAccount] = []
        for code, name, account_type in DEFAULT_CHART_OF_ACCOUNTS:
            if code in existing_codes:
                continue
            account = LedgerAccount(
                organization_id=organization_id,
                code=code,
                name=name,
                type=account_type,
                is_active=True,
            )
            session.add(account)
            created.append(account)

        session.commit()
        return [LedgerAccountRead.model_validate(item) for item in created]

    def _assert_balanced(self, entries: list[LedgerEntry]) -> None:
        for entry in entries:
            if (entry.debit > 0 and entry.credit > 0) or (entry.debit == 0 and entry.credit == 0):
                observe_ledger_post_failure("invalid_line_side")
                raise LedgerImbalanceError("ledger entry must be single-sided")

        debit_total = sum((entry.debit for entry in entries), Decimal("0"))
        credit_total = sum((entry.credit for entry in entries), Decimal("0"))
        if self._q(debit_total) != self._q(credit_total):
            observe_ledger_post_failure("unbalanced_entry")
            raise LedgerImbalanceError(
                "ledger posting is not balanced",
                details={"debit": str(debit_total), "credit": str(credit_total)},
            )

    @staticmethod
    def _q(value: Decimal | int | float) -> Decimal:
        return Decimal(str(value)).quantize(Decimal("0.000001"))


ledger_service = LedgerService()
