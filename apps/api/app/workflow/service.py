from __future__ import annotations

import logging
import uuid
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.business.billing.models import Invoice, InvoiceItem
from app.business.numbering import next_document_number
from app.business.payments.models import Payment
from app.business.revenue.models import Quote, SalesOrder, SalesOrderItem
from app.core.config import get_settings
from app.core.errors import InvalidStateError, NotFoundError
from app.core.locks import dedup_locks
from app.crm.models import CRMCompany, CRMContact, CRMDeal, CRMLead
from app.platform.ledger.schemas import LedgerPostingResult
from app.platform.ledger.service import ledger_service
from app.services.activity import activity_logger
from app.workflow.models import SagaRun
from app.workflow.saga import saga_run
from app.workflow.schemas import (
    InvoiceResult,
    LeadConversionResult,
    LeadConvertOptions,
    PaymentCreate,
    PaymentResult,
    SagaRunRead,
    SalesOrderResult,
)


logger = logging.getLogger("app.workflow")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def today() -> date:
    return utcnow().date()


@dataclass(slots=True)
class _Resolved:
    """A company or contact found or created by a conversion, plus what the step changed."""

    entity_id: uuid.UUID
    created: bool
    backfilled_company: bool = False


@dataclass(slots=True)
class _StatusChange:
    entity_id: uuid.UUID
    previous_status: str
    previous_metadata: dict[str, Any] | None = None


@dataclass(slots=True)
class WorkflowService:
    def convert_lead_to_deal(
        self,
        session: Session,
        lead_id: uuid.UUID,
        options: LeadConvertOptions | None = None,
        *,
        actor_user_id: str | None = None,
    ) -> LeadConversionResult:
        options = options or LeadConvertOptions()
        with ExitStack() as held, saga_run(session, "convert_lead_to_deal", lead_id) as run:
            lead = session.get(CRMLead, lead_id)
            if lead is None:
                raise NotFoundError("lead", lead_id)
            if lead.status == "lost":
                raise InvalidStateError("lead is lost and cannot be converted", details={"lead_id": str(lead_id)})
            if lead.status == "converted":
                previous = run.complete(self._previous_conversion(lead), idempotent=True)
                return LeadConversionResult(**previous, idempotent=True)

            company: _Resolved | None = None
            if options.create_company and lead.company_name:
                company = run.step(
                    "resolve_company",
                    lambda: self._resolve_company(session, lead, held),
                    compensate=self._drop_created_company,
                )

            contact: _Resolved | None = None
            if options.create_contact:
                company_id = company.entity_id if company else None
                contact = run.step(
                    "resolve_contact",
                    lambda: self._resolve_contact(session, lead, company_id, held),
                    compensate=self._undo_contact,
                )

            deal = run.step(
                "create_deal",
                lambda: self._create_deal(
                    session,
                    lead,
                    options,
                    contact_id=contact.entity_id if contact else None,
                    company_id=company.entity_id if company else None,
                ),
                compensate=lambda s, created: self._delete(s, CRMDeal, created.id),
            )
            deal_id = deal.id

            run.step(
                "mark_lead_converted",
                lambda: self._mark_lead_converted(session, lead, deal_id, contact=contact, company=company),
                compensate=self._restore_lead,
            )

            result = {
                "deal_id": str(deal_id),
                "contact_id": str(contact.entity_id) if contact else None,
                "company_id": str(company.entity_id) if company else None,
            }
            run.step(
                "record_activity",
                lambda: activity_logger.record(
                    session,
                    entity_type="deal",
                    entity_id=deal_id,
                    action="created",
                    description=f"Deal created from lead conversion: {lead.name}",
                    metadata={
                        "lead_id": str(lead_id),
                        "contact_id": result["contact_id"],
                        "company_id": result["company_id"],
                    },
                    actor_user_id=actor_user_id,
                ),
            )
            run.complete(result)

        logger.info("workflow.lead_converted", extra={"subject_id": str(lead_id), "status": "converted"})
        return LeadConversionResult(**result)

    def confirm_quote_to_sales_order(
        self,
        session: Session,
        quote_id: uuid.UUID,
        *,
        actor_user_id: str | None = None,
    ) -> SalesOrderResult:
        with saga_run(session, "confirm_quote_to_sales_order", quote_id) as run:
            quote = session.scalar(select(Quote).options(selectinload(Quote.items)).where(Quote.id == quote_id))
            if quote is None:
                raise NotFoundError("quote", quote_id)
            if quote.status in ("rejected", "expired"):
                raise InvalidStateError(
                    f"quote is {quote.status} and cannot be confirmed",
                    details={"quote_id": str(quote_id), "status": quote.status},
                )
            if quote.status == "confirmed":
                existing = session.scalar(
                    select(SalesOrder).where(SalesOrder.quote_id == quote.id).order_by(SalesOrder.created_at.asc())
                )
                if existing is not None:
                    previous = run.complete({"sales_order_id": str(existing.id), "number": existing.number}, idempotent=True)
                    return SalesOrderResult(**previous, idempotent=True)

            issued_on = today()
            number = run.step(
                "allocate_number",
                lambda: next_document_number(session, "SO", organization_id=quote.organization_id, year=issued_on.year),
            )
            order = run.step(
                "create_sales_order",
                lambda: self._create_sales_order(session, quote, number),
                compensate=lambda s, created: self._delete(s, SalesOrder, created.id),
            )
            order_id = order.id
            run.step(
                "clone_items",
                lambda: self._clone_items(session, quote.items, SalesOrderItem, sales_order_id=order_id),
                compensate=lambda s, _: s.execute(delete(SalesOrderItem).where(SalesOrderItem.sales_order_id == order_id)),
            )
            run.step(
                "mark_quote_confirmed",
                lambda: self._set_status(session, quote, "confirmed"),
                compensate=lambda s, change: self._restore_status(s, Quote, change),
            )
            run.step(
                "record_activity",
                lambda: activity_logger.record(
                    session,
                    entity_type="sales_order",
                    entity_id=order_id,
                    action="created",
                    description=f"Sales order created from quote {quote.number}",
                    metadata={"quote_id": str(quote_id), "quote_number": quote.number},
                    actor_user_id=actor_user_id,
                ),
            )
            result = run.complete({"sales_order_id": str(order_id), "number": number})

        logger.info("workflow.quote_confirmed", extra={"subject_id": str(quote_id), "status": "confirmed"})
        return SalesOrderResult(**result)

    def create_invoice_from_sales_order(
        self,
        session: Session,
        sales_order_id: uuid.UUID,
        *,
        actor_user_id: str | None = None,
    ) -> InvoiceResult:
        settings = get_settings()
        with saga_run(session, "create_invoice_from_sales_order", sales_order_id) as run:
            order = session.scalar(
                select(SalesOrder).options(selectinload(SalesOrder.items)).where(SalesOrder.id == sales_order_id)
            )
            if order is None:
                raise NotFoundError("sales_order", sales_order_id)
            if order.status == "cancelled":
                raise InvalidStateError(
                    "sales order is cancelled and cannot be invoiced",
                    details={"sales_order_id": str(sales_order_id), "status": order.status},
                )
            if order.status == "fulfilled":
                existing = session.scalar(
                    select(Invoice).where(Invoice.sales_order_id == order.id).order_by(Invoice.created_at.asc())
                )
                if existing is not None:
                    previous = run.complete({"invoice_id": str(existing.id), "number": existing.number}, idempotent=True)
                    return InvoiceResult(**previous, idempotent=True)

            issued_on = today()
            number = run.step(
                "allocate_number",
                lambda: next_document_number(session, "INV", organization_id=order.organization_id, year=issued_on.year),
            )
            invoice = run.step(
                "create_invoice",
                lambda: self._create_invoice(
                    session,
                    order,
                    number,
                    issue_date=issued_on,
                    due_date=issued_on + timedelta(days=settings.invoice_due_days),
                ),
                compensate=lambda s, created: self._delete(s, Invoice, created.id),
            )
            invoice_id = invoice.id
            run.step(
                "clone_items",
                lambda: self._clone_items(session, order.items, InvoiceItem, invoice_id=invoice_id),
                compensate=lambda s, _: s.execute(delete(InvoiceItem).where(InvoiceItem.invoice_id == invoice_id)),
            )
            run.step(
                "mark_order_fulfilled",
                lambda: self._set_status(session, order, "fulfilled"),
                compensate=lambda s, change: self._restore_status(s, SalesOrder, change),
            )
            run.step(
                "record_activity",
                lambda: activity_logger.record(
                    session,
                    entity_type="invoice",
                    entity_id=invoice_id,
                    action="created",
                    description=f"Invoice created from sales order {order.number}",
                    metadata={"sales_order_id": str(sales_order_id), "so_number": order.number},
                    actor_user_id=actor_user_id,
                ),
            )
            result = run.complete({"invoice_id": str(invoice_id), "number": number})

        logger.info("workflow.invoice_created", extra={"subject_id": str(sales_order_id), "status": "posted"})
        return InvoiceResult(**result)

    def record_payment(
        self,
        session: Session,
        payload: PaymentCreate,
        *,
        actor_user_id: str | None = None,
    ) -> PaymentResult:
        with saga_run(session, "record_payment", payload.invoice_id) as run:
            invoice = session.get(Invoice, payload.invoice_id)
            if invoice is None:
                raise NotFoundError("invoice", payload.invoice_id)
            if invoice.status == "cancelled":
                raise InvalidStateError(
                    "invoice is cancelled and cannot take payments",
                    details={"invoice_id": str(invoice.id), "status": invoice.status},
                )
            if payload.currency != invoice.currency:
                logger.warning(
                    "workflow.payment_currency_mismatch",
                    extra={"subject_id": str(invoice.id), "error": f"{payload.currency} != {invoice.currency}"},
                )

            payment = run.step(
                "insert_payment",
                lambda: self._insert_payment(session, invoice, payload),
                compensate=self._fail_payment,
            )
            payment_id = payment.id

            status_before = _StatusChange(entity_id=invoice.id, previous_status=invoice.status)
            total_paid = run.step(
                "update_invoice_status",
                lambda: self._settle_invoice(session, invoice),
                compensate=lambda s, _: self._restore_status(s, Invoice, status_before),
            )
            ledger: LedgerPostingResult = run.step(
                "post_ledger",
                lambda: ledger_service.post_payment(session, payment),
                compensate=lambda s, posted: ledger_service.reverse_payment(s, payment_id) if posted.posted else None,
            )
            run.step(
                "record_activity",
                lambda: activity_logger.record(
                    session,
                    entity_type="payment",
                    entity_id=payment_id,
                    action="received",
                    description=f"Payment of {payload.amount} {payload.currency} received for invoice",
                    metadata={
                        "invoice_id": str(payload.invoice_id),
                        "method": payload.method,
                        "provider_ref": payload.provider_ref,
                    },
                    actor_user_id=actor_user_id,
                ),
            )
            invoice_status = invoice.status
            result = run.complete(
                {
                    "payment_id": str(payment_id),
                    "invoice_status": invoice_status,
                    "total_paid": str(total_paid),
                    "ledger": ledger.model_dump(mode="json"),
                }
            )

        logger.info("workflow.payment_recorded", extra={"subject_id": str(payload.invoice_id), "status": invoice_status})
        return PaymentResult.model_validate(result)

    def get_saga_run(self, session: Session, run_id: uuid.UUID) -> SagaRunRead:
        row = session.get(SagaRun, run_id)
        if row is None:
            raise NotFoundError("saga_run", run_id)
        return SagaRunRead.model_validate(row)

    def list_saga_runs(
        self,
        session: Session,
        *,
        saga: str | None = None,
        subject_id: str | None = None,
        limit: int = 50,
    ) -> list[SagaRunRead]:
        stmt = select(SagaRun)
        if saga is not None:
            stmt = stmt.where(SagaRun.saga == saga)
        if subject_id is not None:
            stmt = stmt.where(SagaRun.subject_id == subject_id)
        rows = session.scalars(stmt.order_by(SagaRun.started_at.desc()).limit(max(1, min(limit, 200)))).all()
        return [SagaRunRead.model_validate(row) for row in rows]

    def _previous_conversion(self, lead: CRMLead) -> dict[str, Any]:
        metadata = lead.metadata_json or {}
        deal_id = metadata.get("converted_to_deal_id")
        if not deal_id:
            raise InvalidStateError("lead is converted but carries no deal reference", details={"lead_id": str(lead.id)})
        return {
            "deal_id": deal_id,
            "contact_id": metadata.get("converted_contact_id"),
            "company_id": metadata.get("converted_company_id"),
        }

    def _resolve_company(self, session: Session, lead: CRMLead, held: ExitStack) -> _Resolved:
        name = lead.company_name or ""
        held.enter_context(dedup_locks.hold(f"company:{name}"))
        lookup = select(CRMCompany).where(CRMCompany.name == name)
        existing = session.scalar(lookup)
        if existing is not None:
            return _Resolved(entity_id=existing.id, created=False)

        company = CRMCompany(
            name=name,
            domain=self._email_domain(lead.email),
            industry=lead.industry,
            size=lead.company_size,
            metadata_json={"source": lead.source, "industry": lead.industry, "size": lead.company_size},
        )
        winner = self._insert_unique(session, company, lookup)
        if winner is not None:
            return _Resolved(entity_id=winner.id, created=False)
        return _Resolved(entity_id=company.id, created=True)

    def _resolve_contact(
        self,
        session: Session,
        lead: CRMLead,
        company_id: uuid.UUID | None,
        held: ExitStack,
    ) -> _Resolved:
        lookup = None
        if lead.email:
            held.enter_context(dedup_locks.hold(f"contact:{lead.email}"))
            lookup = select(CRMContact).where(CRMContact.email == lead.email)
            existing = session.scalar(lookup)
            if existing is not None:
                return self._reuse_contact(existing, company_id)

        first_name, *rest = lead.name.split(" ")
        contact = CRMContact(
            first_name=first_name,
            last_name=" ".join(rest),
            email=lead.email,
            phone=lead.phone,
            title=lead.title,
            company_id=company_id,
            metadata_json={"source": lead.source, "title": lead.title},
        )
        if lookup is None:
            session.add(contact)
            session.flush()
            return _Resolved(entity_id=contact.id, created=True)

        winner = self._insert_unique(session, contact, lookup)
        if winner is not None:
            return self._reuse_contact(winner, company_id)
        return _Resolved(entity_id=contact.id, created=True)

    def _reuse_contact(self, contact: CRMContact, company_id: uuid.UUID | None) -> _Resolved:
        backfilled = contact.company_id is None and company_id is not None
        if backfilled:
            contact.company_id = company_id
        return _Resolved(entity_id=contact.id, created=False, backfilled_company=backfilled)

    def _insert_unique(self, session: Session, entity: Any, lookup: Any) -> Any | None:
        """Insert `entity` under a savepoint; if a concurrent writer got there first, return its row."""
        try:
            with session.begin_nested():
                session.add(entity)
                session.flush()
        except IntegrityError:
            winner = session.scalar(lookup)
            if winner is None:
                raise
            logger.info(
                "workflow.dedup_lost_race",
                extra={"entity_type": entity.__tablename__, "entity_id": str(winner.id)},
            )
            return winner
        return None

    def _create_deal(
        self,
        session: Session,
        lead: CRMLead,
        options: LeadConvertOptions,
        *,
        contact_id: uuid.UUID | None,
        company_id: uuid.UUID | None,
    ) -> CRMDeal:
        settings = get_settings()
        default_title = f"{lead.company_name} - {lead.name}" if lead.company_name else lead.name
        deal = CRMDeal(
            title=options.deal_title or default_title,
            description=(
                f"Converted from lead: {lead.name} ({lead.email or ''})\n"
                f"Source: {lead.source}\n"
                f"Lead Score: {lead.score}"
            ),
            value=options.estimated_value or Decimal(str(settings.default_deal_value)),
            currency=settings.default_currency,
            probability=settings.initial_deal_probability,
            status="open",
            stage=options.stage or settings.default_deal_stage,
            contact_id=contact_id,
            company_id=company_id,
            expected_close_date=options.expected_close_date,
            metadata_json={
                "converted_from_lead": str(lead.id),
                "lead_source": lead.source,
                "lead_score": lead.score,
            },
        )
        session.add(deal)
        session.flush()
        return deal

    def _mark_lead_converted(
        self,
        session: Session,
        lead: CRMLead,
        deal_id: uuid.UUID,
        *,
        contact: _Resolved | None,
        company: _Resolved | None,
    ) -> _StatusChange:
        change = _StatusChange(
            entity_id=lead.id,
            previous_status=lead.status,
            previous_metadata=dict(lead.metadata_json) if lead.metadata_json is not None else None,
        )
        lead.status = "converted"
        lead.metadata_json = {
            **(lead.metadata_json or {}),
            "converted_to_deal_id": str(deal_id),
            "converted_at": utcnow().isoformat(),
            "converted_contact_id": str(contact.entity_id) if contact else None,
            "converted_company_id": str(company.entity_id) if company else None,
        }
        session.flush()
        return change

    def _create_sales_order(self, session: Session, quote: Quote, number: str) -> SalesOrder:
        order = SalesOrder(
            organization_id=quote.organization_id,
            number=number,
            status="confirmed",
            quote_id=quote.id,
            contact_id=quote.contact_id,
            company_id=quote.company_id,
            currency=quote.currency,
            subtotal=quote.subtotal,
            tax_total=quote.tax_total,
            total=quote.total,
            metadata_json={"converted_from_quote": str(quote.id), "quote_number": quote.number},
        )
        session.add(order)
        session.flush()
        return order

    def _create_invoice(
        self,
        session: Session,
        order: SalesOrder,
        number: str,
        *,
        issue_date: date,
        due_date: date,
    ) -> Invoice:
        invoice = Invoice(
            organization_id=order.organization_id,
            number=number,
            status="posted",
            sales_order_id=order.id,
            contact_id=order.contact_id,
            company_id=order.company_id,
            currency=order.currency or get_settings().default_currency,
            subtotal=order.subtotal,
            tax_total=order.tax_total,
            total=order.total,
            issue_date=issue_date,
            due_date=due_date,
            metadata_json={"created_from_so": str(order.id), "so_number": order.number},
        )
        session.add(invoice)
        session.flush()
        return invoice

    def _clone_items(self, session: Session, items: list[Any], item_type: type[Any], **parent: uuid.UUID) -> int:
        session.add_all(
            item_type(
                **parent,
                position=item.position,
                product_id=item.product_id,
                name=item.name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                tax_rate=item.tax_rate,
            )
            for item in items
        )
        session.flush()
        return len(items)

    def _insert_payment(self, session: Session, invoice: Invoice, payload: PaymentCreate) -> Payment:
        payment = Payment(
            organization_id=invoice.organization_id,
            invoice_id=invoice.id,
            amount=payload.amount,
            currency=payload.currency,
            method=payload.method,
            provider_ref=payload.provider_ref,
            status="succeeded",
            received_at=utcnow(),
        )
        session.add(payment)
        session.flush()
        return payment

    def _settle_invoice(self, session: Session, invoice: Invoice) -> Decimal:
        """Mark the invoice paid once succeeded payments cover its total; returns the amount paid so far."""
        paid = session.scalar(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                Payment.invoice_id == invoice.id,
                Payment.status == "succeeded",
            )
        )
        total_paid = self._q(paid or 0)
        if total_paid >= self._q(invoice.total) and invoice.status != "paid":
            invoice.status = "paid"
            session.flush()
        return total_paid

    def _set_status(self, session: Session, entity: Any, status: str) -> _StatusChange:
        change = _StatusChange(entity_id=entity.id, previous_status=entity.status)
        entity.status = status
        session.flush()
        return change

    def _restore_status(self, session: Session, model: type[Any], change: _StatusChange) -> None:
        row = session.get(model, change.entity_id)
        if row is not None:
            row.status = change.previous_status
            session.flush()

    def _restore_lead(self, session: Session, change: _StatusChange) -> None:
        lead = session.get(CRMLead, change.entity_id)
        if lead is not None:
            lead.status = change.previous_status
            lead.metadata_json = change.previous_metadata
            session.flush()

    def _drop_created_company(self, session: Session, resolved: _Resolved) -> None:
        if resolved.created:
            self._delete(session, CRMCompany, resolved.entity_id)

    def _undo_contact(self, session: Session, resolved: _Resolved) -> None:
        if resolved.created:
            self._delete(session, CRMContact, resolved.entity_id)
            return
        if resolved.backfilled_company:
            contact = session.get(CRMContact, resolved.entity_id)
            if contact is not None:
                contact.company_id = None
                session.flush()

    def _fail_payment(self, session: Session, payment: Payment) -> None:
        row = session.get(Payment, payment.id)
        if row is not None:
            row.status = "failed"
            session.flush()

    @staticmethod
    def _delete(session: Session, model: type[Any], entity_id: uuid.UUID) -> None:
        row = session.get(model, entity_id)
        if row is not None:
            session.delete(row)
            session.flush()

    @staticmethod
    def _email_domain(email: str | None) -> str | None:
        if not email or "@" not in email:
            return None
        return email.split("@", 1)[1] or None

    @staticmethod
    def _q(value: Decimal | int | float) -> Decimal:
        return Decimal(str(value)).quantize(Decimal("0.000001"))


workflow_service = WorkflowService()
