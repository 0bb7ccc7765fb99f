import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from mediaflow.api.v1 import media, uploads
from mediaflow.core.metrics import snapshot as metrics_snapshot
from mediaflow.core.redis_client import redis_ping
from mediaflow.db.session import get_session

logger = logging.getLogger(__name__)

api_router = APIRouter()

api_router.include_router(uploads.router)
api_router.include_router(media.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@api_router.get("/health/ready", tags=["health"])
async def readiness(response: Response, session: AsyncSession = Depends(get_session)) -> dict[str, str]:
    checks: dict[str, str] = {}
    try:
        await session.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as exc:
        logger.warning("readiness_database_failed", extra={"error": str(exc)})
        checks["database"] = "error"

    redis_ok = await redis_ping()
    checks["redis"] = "disabled" if redis_ok is None else ("ok" if redis_ok else "error")

    ready = "error" not in checks.values()
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {"status": "ready" if ready else "not_ready", **checks}


@api_router.get("/metrics", tags=["metrics"])
def metrics() -> dict:
    return metrics_snapshot()
