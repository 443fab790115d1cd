from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from orthoflow.core.auth import AuthUser, get_current_user
from orthoflow.core.config import get_settings
from orthoflow.metrics import generate_metrics_payload, metrics_content_type
from orthoflow.workflow.api import entities_router, workflows_router
from orthoflow.workflow.service import workflow_service

METRICS_READ_ROLE = "system.metrics.read"

router = APIRouter()
router.include_router(workflows_router)
router.include_router(entities_router)


def require_metrics_reader(user: AuthUser = Depends(get_current_user)) -> AuthUser:
    # A disabled endpoint is hidden rather than forbidden.
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if METRICS_READ_ROLE not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {METRICS_READ_ROLE}")
    return user


@router.get("/health", tags=["system"])
def health() -> dict[str, str | list[str]]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "workflows": [definition.entity_type for definition in workflow_service.rule_table.definitions()],
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {"sub": user.sub, "roles": user.roles}


@router.get("/metrics", tags=["system"], dependencies=[Depends(require_metrics_reader)])
def metrics() -> Response:
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
