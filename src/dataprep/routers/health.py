"""Health and readiness endpoints."""
from typing import Any

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dataprep import __version__
from dataprep.core.redis_client import ping_redis
from dataprep.core.settings import get_settings
from dataprep.db.base import get_session

router = APIRouter()


@router.get("/health", tags=["meta"])  # liveness, no auth
async def health() -> dict[str, object]:
    settings = get_settings()
    return {
        "status": "ok",
        "environment": settings.environment,
        "debug": settings.debug,
        "version": __version__,
        "executor": settings.run_executor,
    }


@router.get("/health/ready", tags=["meta"])
async def readiness(
    response: Response,
    session: AsyncSession = Depends(get_session),  # noqa: B008 - FastAPI DI
) -> dict[str, Any]:
    """Database reachability, plus the broker when runs execute on Celery."""
    checks: dict[str, bool] = {}
    try:
        await session.execute(text("SELECT 1"))
        checks["database"] = True
    except SQLAlchemyError:
        checks["database"] = False
    if get_settings().run_executor == "celery":
        checks["broker"] = await ping_redis()

    ok = all(checks.values())
    if not ok:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {"status": "ok" if ok else "error", "checks": checks}
