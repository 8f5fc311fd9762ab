"""Health check endpoints."""

from fastapi import APIRouter, HTTPException, Request, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bulletin.core.config import settings
from bulletin.core.deps import DBSession
from bulletin.schemas.common import HealthResponse

router = APIRouter(tags=["health"])


async def _database_state(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        return f"unhealthy: {e}"
    return "healthy"


def _scheduler_state(request: Request) -> str:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        return "disabled"
    return "running" if scheduler.running else "stopped"


def _configured(value: str | None) -> str:
    return "configured" if value else "not configured"


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request, db: DBSession) -> HealthResponse:
    """Report database connectivity, the send scheduler and optional integrations.

    Only the database decides the overall status; an unconfigured shortener
    or captcha is a valid deployment.
    """
    checks = {
        "database": await _database_state(db),
        "scheduler": _scheduler_state(request),
        "smtp": _configured(settings.smtp_host),
        "shortener": _configured(settings.yourls_api_url),
        "captcha": _configured(settings.turnstile_secret),
    }
    return HealthResponse(
        status="healthy" if checks["database"] == "healthy" else "unhealthy",
        version=settings.version,
        environment=settings.environment,
        checks=checks,
    )


@router.get("/health/live")
async def liveness_check() -> dict[str, str]:
    """Liveness probe: the process is up and serving requests."""
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(db: DBSession) -> dict[str, str]:
    """Readiness probe: 503 until the database answers."""
    if await _database_state(db) != "healthy":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        )
    return {"status": "ready"}
