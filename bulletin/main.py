"""FastAPI application entry point.

The app serves three audiences: the admin console (bearer-authenticated
routes under the API prefix), subscribers (subscription management under the
API prefix) and mail clients (tracking, one-click unsubscribe and the public
archive at the root, whose URLs are embedded in already-delivered email).
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from bulletin.api import public
from bulletin.api.v1.router import api_router
from bulletin.core.config import settings
from bulletin.core.database import async_session_maker
from bulletin.core.logging_config import generate_request_id, request_id_var, setup_logging
from bulletin.core.rate_limit import limiter
from bulletin.services.email_service import get_email_service
from bulletin.services.newsletter_service import NewsletterSender
from bulletin.services.shorturl_service import get_shorturl_service
from bulletin.workers.scheduler import NewsletterScheduler

logger = logging.getLogger(__name__)


def build_sender() -> NewsletterSender:
    """Create a send orchestrator from application settings."""
    return NewsletterSender(
        session_factory=async_session_maker,
        email=get_email_service(),
        shortener=get_shorturl_service(),
        base_url=settings.base_url,
        rate_limit_ms=settings.smtp_rate_limit_ms,
        default_template_slug=settings.default_template_slug,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Configure logging and run the send scheduler for the life of the app."""
    setup_logging(debug=settings.debug)
    logger.info(
        "Starting %s v%s (%s), public URL %s",
        settings.project_name,
        settings.version,
        settings.environment,
        settings.base_url,
    )

    scheduler: NewsletterScheduler | None = None
    if settings.scheduler_enabled:
        scheduler = NewsletterScheduler(
            async_session_maker,
            build_sender,
            interval_secs=settings.newsletter_scheduler_interval_secs,
        )
        scheduler.start()
    else:
        logger.info("Newsletter scheduler disabled; scheduled campaigns will not be sent")
    app.state.scheduler = scheduler

    yield

    if scheduler is not None:
        await scheduler.stop()
    logger.info("Shutdown complete")


def _init_error_reporting() -> None:
    if not settings.sentry_dsn:
        return
    import sentry_sdk

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=f"bulletin@{settings.version}",
        traces_sample_rate=0.1,
    )


def _add_middleware(app: FastAPI) -> None:
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)  # type: ignore[arg-type]
    app.add_middleware(SlowAPIMiddleware)

    # Admin console and subscription pages; tracking URLs are plain navigations
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next: Any) -> Response:
        rid = request.headers.get("X-Request-ID") or generate_request_id()
        request_id_var.set(rid)
        response: Response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response


def _add_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled exception on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )


def _add_routes(app: FastAPI) -> None:
    app.include_router(api_router, prefix=settings.api_v1_prefix)
    app.include_router(public.router)

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url=f"{settings.api_v1_prefix}/docs")

    @app.get("/")
    async def root() -> dict[str, Any]:
        """Service information and entry points."""
        return {
            "name": settings.project_name,
            "version": settings.version,
            "docs": f"{settings.api_v1_prefix}/docs",
            "health": f"{settings.api_v1_prefix}/health",
            "archive": "/newsletters",
        }


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    _init_error_reporting()

    app = FastAPI(
        title=settings.project_name,
        version=settings.version,
        openapi_url=f"{settings.api_v1_prefix}/openapi.json",
        docs_url=f"{settings.api_v1_prefix}/docs",
        redoc_url=f"{settings.api_v1_prefix}/redoc",
        lifespan=lifespan,
    )
    _add_middleware(app)
    _add_error_handlers(app)
    _add_routes(app)
    return app


app = create_app()
