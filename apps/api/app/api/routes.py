from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.rbac import require_permissions
from app.metrics import generate_metrics_payload, metrics_content_type
from app.crm.api import (
    automations_router,
    deals_router,
    industry_router,
    pipelines_router,
    tasks_router,
)

router = APIRouter()
router.include_router(deals_router)
router.include_router(pipelines_router)
router.include_router(automations_router)
router.include_router(tasks_router)
router.include_router(industry_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str | bool]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "automations_enabled": settings.automations_enabled,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str] | None]:
    return {
        "sub": user.sub,
        "roles": user.roles,
        "organization_id": user.organization_id,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(require_permissions("system.metrics.read"))) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
