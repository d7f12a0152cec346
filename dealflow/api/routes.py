from fastapi import APIRouter, HTTPException, Request, Response, status

from dealflow.core.config import get_settings
from dealflow.crm.api import router as deals_router
from dealflow.metrics import generate_metrics_payload, metrics_content_type


router = APIRouter()
router.include_router(deals_router)


@router.get("/health", tags=["system"])
def health(request: Request) -> dict[str, str | bool]:
    settings = get_settings()
    client = getattr(request.app.state, "deals_client", None)
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "deals_loaded": bool(client is not None and client.cache.is_loaded),
    }


@router.get("/metrics", tags=["system"])
def metrics() -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
