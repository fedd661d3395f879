"""
Health check endpoints.
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from config import settings
from database import engine

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint.
    Returns overall system health status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "rate_limit_store": "unknown",
        "gateway_secret": "configured" if settings.GATEWAY_SECRET_KEY else "missing",
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        health_status["rate_limit_store"] = "missing"
        health_status["status"] = "degraded"
    elif limiter.store is limiter.fallback:
        health_status["rate_limit_store"] = "in_process"
    else:
        try:
            await limiter.store.ping()
            health_status["rate_limit_store"] = "redis"
        except Exception as e:
            health_status["rate_limit_store"] = f"redis down (in-process fallback): {str(e)}"
            health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if not settings.GATEWAY_SECRET_KEY:
        missing.append("GATEWAY_SECRET_KEY")
    if not settings.WEBHOOK_SECRET:
        missing.append("WEBHOOK_SECRET")

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
