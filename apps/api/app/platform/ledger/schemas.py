from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


LedgerAccountType = Literal["ASSET", "LIABILITY", "EQUITY", "REVENUE", "EXPENSE"]


class LedgerAccountCreate(BaseModel):
    code: str = Field(min_length=1)
    name: str = Field(min_length=1)
    type: LedgerAccountType
    is_active: bool = True


class LedgerAccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: str
    code: str
    name: str
    type: str
    is_active: bool
    created_at: datetime


class LedgerEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: str
    account_id: UUID
    ref_type: str
    ref_id: str
    debit: Decimal
    credit: Decimal
    currency: str
    memo: str | None
    correlation_id: str | None
    created_at: datetime


class LedgerPostingResult(BaseModel):
    """Outcome of posting a payment; a skip is reported, never swallowed."""

    posted: bool
    entry_ids: list[UUID] = Field(default_factory=list)
    error: Literal["MissingLedgerAccounts"] | None = None
    missing_codes: list[str] = Field(default_factory=list)


class TrialBalanceLine(BaseModel):
    account_code: str
    account_name: str
    debit: Decimal
    credit: Decimal


class TrialBalanceRead(BaseModel):
    lines: list[TrialBalanceLine] = Field(default_factory=list)
    total_debit: Decimal
    total_credit: Decimal
    balanced: bool
