from fastapi import APIRouter

from backoffice.config import settings
from backoffice.core.observability import uptime_seconds, utc_now_iso

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", summary="Healthcheck")
def healthcheck():
    """Liveness check. Keep the payload stable for monitoring systems."""
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.environment,
        "time": utc_now_iso(),
        "uptime_seconds": round(uptime_seconds(), 2),
        "version": getattr(settings, "build_version", None),
        "rule_catalog_version": settings.rule_catalog_version,
        "readiness_weights_version": settings.readiness_weights_version,
    }
