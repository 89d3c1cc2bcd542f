from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.errors import failure_response
from app.core.auth import ActorUser, get_current_user, require_permission
from app.core.config import get_settings
from app.core.database import get_db
from app.core.errors import EngineError
from app.platform.ledger.schemas import LedgerAccountCreate, LedgerAccountRead, LedgerEntryRead, TrialBalanceRead
from app.platform.ledger.service import ledger_service


router = APIRouter(prefix="/api/ledger", tags=["ledger"])


@router.post("/accounts", response_model=LedgerAccountRead, status_code=status.HTTP_201_CREATED)
def create_account(
    request: Request,
    payload: LedgerAccountCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LedgerAccountRead | JSONResponse:
    try:
        require_permission(user, "ledger.manage")
        return ledger_service.create_account(db, payload, organization_id=get_settings().organization_id)
    except (EngineError, HTTPException) as exc:
        return failure_response(request, exc, fallback_code="ledger_account_create_failed")


@router.get("/accounts", response_model=list[LedgerAccountRead])
def list_accounts(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LedgerAccountRead] | JSONResponse:
    try:
        require_permission(user, "ledger.read")
        return ledger_service.list_accounts(db, organization_id=get_settings().organization_id)
    except HTTPException as exc:
        return failure_response(request, exc, fallback_code="ledger_account_list_failed")


@router.post("/accounts/seed", response_model=list[LedgerAccountRead])
def seed_chart_of_accounts(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LedgerAccountRead] | JSONResponse:
    try:
        require_permission(user, "ledger.manage")
        return ledger_service.seed_chart_of_accounts(db, organization_id=get_settings().organization_id)
    except HTTPException as exc:
        return failure_response(request, exc, fallback_code="ledger_seed_failed")


@router.get("/entries", response_model=list[LedgerEntryRead])
def list_entries(
    request: Request,
    ref_type: str | None = Query(default=None),
    ref_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LedgerEntryRead] | JSONResponse:
    try:
        require_permission(user, "ledger.read")
        return ledger_service.list_entries(
            db,
            organization_id=get_settings().organization_id,
            ref_type=ref_type,
            ref_id=ref_id,
        )
    except HTTPException as exc:
        return failure_response(request, exc, fallback_code="ledger_entry_list_failed")


@router.get("/trial-balance", response_model=TrialBalanceRead)
def trial_balance(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TrialBalanceRead | JSONResponse:
    try:
        require_permission(user, "ledger.read")
        return ledger_service.trial_balance(db, organization_id=get_settings().organization_id)
    except HTTPException as exc:
        return failure_response(request, exc, fallback_code="trial_balance_failed")
