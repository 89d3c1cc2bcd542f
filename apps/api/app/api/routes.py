from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.automation.api import router as automations_router
from app.core.auth import ActorUser, get_current_user
from app.core.config import get_settings
from app.metrics import generate_metrics_payload, metrics_content_type
from app.platform.ledger.api import router as ledger_router
from app.workflow.api import router as workflows_router

router = APIRouter()
router.include_router(workflows_router)
router.include_router(automations_router)
router.include_router(ledger_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "saga_mode": settings.saga_mode,
    }


@router.get("/me", tags=["auth"])
def me(user: ActorUser = Depends(get_current_user)) -> dict[str, str | list[str] | None]:
    return {
        "user_id": user.user_id,
        "permissions": sorted(user.permissions),
    }


@router.get("/metrics", tags=["system"])
def metrics(user: ActorUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
