"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine

router = APIRouter()


def _provider_key_name() -> str:
    provider = (settings.DEFAULT_AI_PROVIDER or "evolink").strip().lower()
    return "KIE_API_KEY" if provider == "kie" else "EVOLINK_API_KEY"


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Reports database, Redis, provider and storage state.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "provider": (settings.DEFAULT_AI_PROVIDER or "evolink"),
        "provider_api_key": "configured" if getattr(settings, _provider_key_name()) else "missing",
        "storage": "configured" if settings.STORAGE_BUCKET and settings.STORAGE_ENDPOINT else "missing",
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Ready once a provider key and durable storage are configured."""
    missing = []
    key_name = _provider_key_name()
    if not getattr(settings, key_name):
        missing.append(key_name)
    for name in ("STORAGE_ENDPOINT", "STORAGE_BUCKET", "STORAGE_ACCESS_KEY", "STORAGE_SECRET_KEY"):
        if not getattr(settings, name):
            missing.append(name)

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
