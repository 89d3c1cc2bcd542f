from __future__ import annotations

import uuid

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.errors import failure_response
from app.automation.fixtures import generate_trigger_payload
from app.automation.schemas import (
    CatalogRead,
    EventDispatchRequest,
    EventDispatchResult,
    ExecutionLogRead,
    FixtureRead,
    InvocationResult,
    InvokeRequest,
    RuleCreate,
    RuleRead,
    RuleUpdate,
)
from app.automation.service import automation_service
from app.core.auth import ActorUser, get_current_user, require_permission
from app.core.database import get_db
from app.core.errors import EngineError


router = APIRouter(prefix="/api/automations", tags=["automations"])


@router.post("/rules", response_model=RuleRead, status_code=status.HTTP_201_CREATED)
def create_rule(
    request: Request,
    payload: RuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RuleRead | JSONResponse:
    try:
        require_permission(user, "automations.manage")
        return automation_service.create_rule(db, payload, actor_user_id=user.user_id)
    except (EngineError, HTTPException) as exc:
        return failure_response(request, exc, fallback_code="rule_create_failed")


@router.get("/rules", response_model=list[RuleRead])
def list_rules(
    request: Request,
    active: bool | None = Query(default=None),
    trigger_type: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[RuleRead] | JSONResponse:
    try:
        require_permission(user, "automations.read")
        return automation_service.list_rules(db, active=active, trigger_type=trigger_type, limit=limit)
    except HTTPException as exc:
        return failure_response(request, exc, fallback_code="rule_list_failed")


@router.get("/rules/{rule_id}", response_model=RuleRead)
def get_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RuleRead | JSONResponse:
    try:
        require_permission(user, "automations.read")
        return automation_service.get_rule(db, rule_id)
    except (EngineError, HTTPException) as exc:
        return failure_response(request, exc, fallback_code="rule_get_failed")


@router.patch("/rules/{rule_id}", response_model=RuleRead)
def update_rule(
    request: Request,
    rule_id: uuid.UUID,
    payload: RuleUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RuleRead | JSONResponse:
    try:
        require_permission(user, "automations.manage")
        return automation_service.update_rule(db, rule_id, payload)
    except (EngineError, HTTPException) as exc:
        return failure_response(request, exc, fallback_code="rule_update_failed")


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "automations.manage")
        automation_service.delete_rule(db, rule_id)
    except (EngineError, HTTPException) as exc:
        return failure_response(request, exc, fallback_code="rule_delete_failed")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/rules/{rule_id}/invoke", response_model=InvocationResult)
def invoke_rule(
    request: Request,
    rule_id: uuid.UUID,
    payload: InvokeRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InvocationResult | JSONResponse:
    try:
        require_permission(user, "automations.execute")
        trigger_data = payload.trigger_data if payload is not None else None
        return automation_service.invoke_rule(db, rule_id, trigger_data, actor_user_id=user.user_id)
    except (EngineError, HTTPException) as exc:
        return failure_response(request, exc, fallback_code="rule_invoke_failed")


@router.post("/events", response_model=EventDispatchResult)
def dispatch_event(
    request: Request,
    payload: EventDispatchRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EventDispatchResult | JSONResponse:
    try:
        require_permission(user, "automations.execute")
        return automation_service.dispatch_event(db, payload.trigger_type, payload.payload, actor_user_id=user.user_id)
    except (EngineError, HTTPException) as exc:
        return failure_response(request, exc, fallback_code="event_dispatch_failed")


@router.get("/logs", response_model=list[ExecutionLogRead])
def list_logs(
    request: Request,
    rule_id: uuid.UUID | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ExecutionLogRead] | JSONResponse:
    try:
        require_permission(user, "automations.read")
        return automation_service.list_execution_logs(db, rule_id=rule_id, limit=limit)
    except HTTPException as exc:
        return failure_response(request, exc, fallback_code="execution_log_list_failed")


@router.get("/catalog", response_model=CatalogRead)
def get_catalog(
    request: Request,
    user: ActorUser = Depends(get_current_user),
) -> CatalogRead | JSONResponse:
    try:
        require_permission(user, "automations.read")
        return automation_service.catalog()
    except HTTPException as exc:
        return failure_response(request, exc, fallback_code="catalog_read_failed")


@router.get("/fixtures/{trigger_type}", response_model=FixtureRead)
def get_fixture(
    request: Request,
    trigger_type: str,
    user: ActorUser = Depends(get_current_user),
) -> FixtureRead | JSONResponse:
    try:
        require_permission(user, "automations.read")
        return FixtureRead(trigger_type=trigger_type, payload=generate_trigger_payload(trigger_type))
    except (EngineError, HTTPException) as exc:
        return failure_response(request, exc, fallback_code="fixture_generation_failed")
