from fastapi import APIRouter
from datetime import datetime, timezone

from risk_engine.core.config import settings
from risk_engine.services.background_worker import get_worker

router = APIRouter()
_STARTED_AT = datetime.now(timezone.utc)


@router.get("/health")
async def get_health():
    """
    Health check with worker status and uptime.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "service": settings.APP_NAME,
        "environment": settings.APP_ENV,
        "server_time": now.isoformat(),
        "uptime_seconds": int((now - _STARTED_AT).total_seconds()),
        "worker": {"running": get_worker().running},
    }
