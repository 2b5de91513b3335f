from fastapi import APIRouter, Request

from app.core.config import get_settings

router = APIRouter(prefix="/ping", tags=["health"])


@router.get("", summary="Public health check")
async def ping(request: Request) -> dict[str, str]:
    configured = getattr(request.app.state, "helpdesk_service", None) is not None
    return {
        "status": "ok" if configured else "degraded",
        "backend": get_settings().repository_backend,
    }
