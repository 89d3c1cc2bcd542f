from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.platform.ledger.schemas import LedgerPostingResult


SagaName = Literal["convert_lead_to_deal", "confirm_quote_to_sales_order", "create_invoice_from_sales_order", "record_payment"]


class LeadConvertOptions(BaseModel):
    deal_title: str | None = Field(default=None, max_length=255)
    estimated_value: Decimal | None = Field(default=None, ge=Decimal("0"))
    stage: str | None = Field(default=None, max_length=64)
    expected_close_date: date | None = None
    create_contact: bool = True
    create_company: bool = True


class LeadConversionResult(BaseModel):
    deal_id: UUID
    contact_id: UUID | None = None
    company_id: UUID | None = None
    idempotent: bool = False


class SalesOrderResult(BaseModel):
    sales_order_id: UUID
    number: str
    idempotent: bool = False


class InvoiceResult(BaseModel):
    invoice_id: UUID
    number: str
    idempotent: bool = False


class PaymentCreate(BaseModel):
    invoice_id: UUID
    amount: Decimal = Field(gt=Decimal("0"))
    currency: str = Field(min_length=1, max_length=16)
    method: str = Field(min_length=1, max_length=32)
    provider_ref: str | None = Field(default=None, max_length=255)


class PaymentResult(BaseModel):
    payment_id: UUID
    invoice_status: str
    total_paid: Decimal
    ledger: LedgerPostingResult


class SagaRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    correlation_id: str
    saga: str
    mode: str
    subject_id: str
    status: str
    steps: list[dict[str, Any]]
    result: dict[str, Any] | None
    error: str | None
    started_at: datetime
    finished_at: datetime | None


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_type: str
    entity_id: str
    action: str
    description: str
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_json")
    actor_user_id: str | None
    correlation_id: str | None
    created_at: datetime
