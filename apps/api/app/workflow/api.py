from __future__ import annotations

import uuid

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.errors import failure_response
from app.core.auth import ActorUser, get_current_user, require_permission
from app.core.database import get_db
from app.core.errors import EngineError
from app.services.activity import activity_logger
from app.workflow.schemas import (
    ActivityRead,
    InvoiceResult,
    LeadConversionResult,
    LeadConvertOptions,
    PaymentCreate,
    PaymentResult,
    SagaRunRead,
    SalesOrderResult,
)
from app.workflow.service import workflow_service


router = APIRouter(prefix="/api/workflows", tags=["workflows"])


@router.post("/leads/{lead_id}/convert", response_model=LeadConversionResult)
def convert_lead(
    request: Request,
    lead_id: uuid.UUID,
    options: LeadConvertOptions | None = Body(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadConversionResult | JSONResponse:
    try:
        require_permission(user, "workflows.execute")
        return workflow_service.convert_lead_to_deal(db, lead_id, options, actor_user_id=user.user_id)
    except (EngineError, HTTPException) as exc:
        return failure_response(request, exc, fallback_code="lead_conversion_failed")


@router.post("/quotes/{quote_id}/confirm", response_model=SalesOrderResult)
def confirm_quote(
    request: Request,
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SalesOrderResult | JSONResponse:
    try:
        require_permission(user, "workflows.execute")
        return workflow_service.confirm_quote_to_sales_order(db, quote_id, actor_user_id=user.user_id)
    except (EngineError, HTTPException) as exc:
        return failure_response(request, exc, fallback_code="quote_confirmation_failed")


@router.post("/sales-orders/{sales_order_id}/invoice", response_model=InvoiceResult)
def invoice_sales_order(
    request: Request,
    sales_order_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InvoiceResult | JSONResponse:
    try:
        require_permission(user, "workflows.execute")
        return workflow_service.create_invoice_from_sales_order(db, sales_order_id, actor_user_id=user.user_id)
    except (EngineError, HTTPException) as exc:
        return failure_response(request, exc, fallback_code="invoice_creation_failed")


@router.post("/payments", response_model=PaymentResult, status_code=status.HTTP_201_CREATED)
def record_payment(
    request: Request,
    payload: PaymentCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PaymentResult | JSONResponse:
    try:
        require_permission(user, "workflows.execute")
        return workflow_service.record_payment(db, payload, actor_user_id=user.user_id)
    except (EngineError, HTTPException) as exc:
        return failure_response(request, exc, fallback_code="payment_recording_failed")


@router.get("/runs", response_model=list[SagaRunRead])
def list_runs(
    request: Request,
    saga: str | None = Query(default=None),
    subject_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[SagaRunRead] | JSONResponse:
    try:
        require_permission(user, "workflows.read")
        return workflow_service.list_saga_runs(db, saga=saga, subject_id=subject_id, limit=limit)
    except HTTPException as exc:
        return failure_response(request, exc, fallback_code="saga_run_list_failed")


@router.get("/runs/{run_id}", response_model=SagaRunRead)
def get_run(
    request: Request,
    run_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SagaRunRead | JSONResponse:
    try:
        require_permission(user, "workflows.read")
        return workflow_service.get_saga_run(db, run_id)
    except (EngineError, HTTPException) as exc:
        return failure_response(request, exc, fallback_code="saga_run_get_failed")


@router.get("/activities", response_model=list[ActivityRead])
def list_activities(
    request: Request,
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        require_permission(user, "workflows.read")
        rows = activity_logger.list_activities(db, entity_type=entity_type, entity_id=entity_id, limit=limit)
        return [ActivityRead.model_validate(row) for row in rows]
    except HTTPException as exc:
        return failure_response(request, exc, fallback_code="activity_list_failed")
