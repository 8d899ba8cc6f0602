from fastapi import APIRouter, Depends
from fastapi.responses import Response

from app.auth.api import admin_router as auth_admin_router
from app.auth.api import router as auth_router
from app.auth.dependencies import require_admin_scope
from app.core.config import get_settings
from app.core.errors import NotFoundError
from app.data.api import admin_router as data_admin_router
from app.data.api import router as data_router
from app.hooks.api import admin_router as hooks_admin_router
from app.hooks.api import realtime_router
from app.metrics import generate_metrics_payload, metrics_content_type
from app.platform.security.context import AuthContext
from app.platform.security.scopes import Action
from app.push.api import admin_router as push_admin_router
from app.push.api import router as push_router
from app.queries.api import admin_router as queries_admin_router
from app.queries.api import router as queries_router

router = APIRouter()
router.include_router(auth_router)
router.include_router(auth_admin_router)
router.include_router(data_router)
router.include_router(data_admin_router)
router.include_router(queries_router)
router.include_router(queries_admin_router)
router.include_router(hooks_admin_router)
router.include_router(realtime_router)
router.include_router(push_router)
router.include_router(push_admin_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(ctx: AuthContext = Depends(require_admin_scope(Action.READ))) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise NotFoundError("not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
