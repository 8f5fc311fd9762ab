"""Dependency injection for FastAPI routes."""

from collections.abc import AsyncGenerator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

# Re-export auth dependencies for convenience
from bulletin.core.auth import CurrentAdmin, get_current_admin
from bulletin.core.config import settings
from bulletin.core.database import async_session_maker, get_async_session
from bulletin.models.newsletter import Newsletter
from bulletin.services.captcha_service import CaptchaVerifier, get_captcha_verifier
from bulletin.services.email_service import EmailTransport, get_email_service
from bulletin.services.newsletter_service import NewsletterSender
from bulletin.services.shorturl_service import ShortUrlService, get_shorturl_service

# Type alias for database session dependency
AsyncSessionDep = Annotated[AsyncSession, Depends(get_async_session)]


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Alias for get_async_session for backwards compatibility."""
    async for session in get_async_session():
        yield session


# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]


def get_email_transport() -> EmailTransport:
    return get_email_service()


def get_shortener() -> ShortUrlService | None:
    return get_shorturl_service()


def get_captcha() -> CaptchaVerifier:
    return get_captcha_verifier()


def get_newsletter_sender(
    email: EmailTransport = Depends(get_email_transport),
    shortener: ShortUrlService | None = Depends(get_shortener),
) -> NewsletterSender:
    """Build a send orchestrator bound to the application's session factory."""
    return NewsletterSender(
        session_factory=async_session_maker,
        email=email,
        shortener=shortener,
        base_url=settings.base_url,
        rate_limit_ms=settings.smtp_rate_limit_ms,
        default_template_slug=settings.default_template_slug,
    )


EmailTransportDep = Annotated[EmailTransport, Depends(get_email_transport)]
CaptchaDep = Annotated[CaptchaVerifier, Depends(get_captcha)]
SenderDep = Annotated[NewsletterSender, Depends(get_newsletter_sender)]


async def get_newsletter_for_admin(
    newsletter_id: UUID,
    admin: CurrentAdmin,
    db: AsyncSession = Depends(get_db),
) -> Newsletter:
    """Load a newsletter by path ID for an authenticated admin."""
    newsletter = await db.get(Newsletter, newsletter_id)
    if newsletter is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Newsletter not found",
        )
    return newsletter


AdminNewsletter = Annotated[Newsletter, Depends(get_newsletter_for_admin)]


__all__ = [
    "AdminNewsletter",
    "AsyncSessionDep",
    "CaptchaDep",
    "CurrentAdmin",
    "DBSession",
    "EmailTransportDep",
    "SenderDep",
    "get_captcha",
    "get_current_admin",
    "get_db",
    "get_email_transport",
    "get_newsletter_for_admin",
    "get_newsletter_sender",
    "get_shortener",
]
