"""Subscriber lifecycle: double opt-in, self-service management, unsubscribes."""

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bulletin.core.config import settings
from bulletin.core.security import (
    compute_admin_link,
    generate_secret_code,
    generate_token,
    generate_ucode,
    verify_admin_link,
)
from bulletin.models.newsletter import Newsletter
from bulletin.models.subscriber import Subscriber
from bulletin.models.unsubscribe_event import UnsubscribeEvent
from bulletin.models.verification_token import VerificationToken
from bulletin.services.email_service import (
    EmailDeliveryError,
    EmailTransport,
    send_verification_email,
)

logger = logging.getLogger(__name__)


def build_manage_url(base_url: str, subscriber: Subscriber) -> str:
    admin_link = compute_admin_link(subscriber.secret_code, subscriber.email)
    return f"{base_url}/manage/{admin_link}"


class SubscriberService:
    """Service for public subscription flows."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get_by_email(self, email: str) -> Subscriber | None:
        result = await self.db.execute(
            select(Subscriber).where(Subscriber.email == email.strip().lower())
        )
        return result.scalar_one_or_none()

    async def subscribe(
        self,
        email: str,
        name: str,
        transport: EmailTransport,
        source: str = "web",
    ) -> Subscriber | None:
        """Create an unverified subscriber and send the verification email.

        Returns None when the address is already known; callers must respond
        identically in both cases so addresses cannot be enumerated.
        """
        email = email.strip().lower()
        if await self.get_by_email(email) is not None:
            logger.info("Subscription request for existing address ignored")
            return None

        subscriber = Subscriber(
            email=email,
            name=name.strip(),
            secret_code=generate_secret_code(),
            ucode=generate_ucode(),
            status=False,
            verified_email=False,
            subscription_source=source,
        )
        self.db.add(subscriber)
        await self.db.flush()

        token = VerificationToken(
            subscriber_id=subscriber.id,
            token=generate_token(),
            expires_at=datetime.now(UTC) + timedelta(hours=settings.verification_token_ttl_hours),
        )
        self.db.add(token)
        await self.db.commit()
        await self.db.refresh(subscriber)

        verify_url = f"{settings.base_url}{settings.api_v1_prefix}/verify/{token.token}"
        try:
            await send_verification_email(transport, email, verify_url)
        except EmailDeliveryError:
            logger.exception("Failed to send verification email to subscriber %s", subscriber.ucode)

        logger.info("Subscriber created: ucode=%s source=%s", subscriber.ucode, source)
        return subscriber

    async def verify(self, token: str) -> Subscriber | None:
        """Consume a verification token and activate its subscriber.

        Returns None if the token is unknown, expired or already used.
        """
        now = datetime.now(UTC)
        result = await self.db.execute(
            select(VerificationToken).where(
                VerificationToken.token == token,
                VerificationToken.used_at.is_(None),
                VerificationToken.expires_at > now,
            )
        )
        record = result.scalar_one_or_none()
        if record is None:
            return None

        subscriber = await self.db.get(Subscriber, record.subscriber_id)
        if subscriber is None:
            return None

        record.used_at = now
        subscriber.verified_email = True
        subscriber.status = True
        await self.db.commit()
        await self.db.refresh(subscriber)

        logger.info("Subscriber verified: ucode=%s", subscriber.ucode)
        return subscriber

    async def find_by_admin_link(self, admin_link: str) -> Subscriber | None:
        """Resolve an admin link to its subscriber.

        Imported records carrying a legacy link are matched first; otherwise
        the link is recomputed for each subscriber and compared in constant
        time.
        """
        result = await self.db.execute(
            select(Subscriber).where(Subscriber.legacy_admin_link == admin_link)
        )
        subscriber = result.scalar_one_or_none()
        if subscriber is not None:
            return subscriber

        result = await self.db.execute(select(Subscriber))
        for candidate in result.scalars():
            expected = compute_admin_link(candidate.secret_code, candidate.email)
            if verify_admin_link(admin_link, expected):
                return candidate
        return None

    async def update_name(self, subscriber: Subscriber, name: str) -> Subscriber:
        subscriber.name = name.strip()
        await self.db.commit()
        await self.db.refresh(subscriber)
        return subscriber

    async def unsubscribe(
        self,
        subscriber: Subscriber,
        from_slug: str | None = None,
        source: str = "manage",
    ) -> None:
        """Withdraw consent and record which campaign prompted it."""
        subscriber.status = False
        await self.db.commit()
        logger.info("Subscriber unsubscribed: ucode=%s source=%s", subscriber.ucode, source)
        await self._record_unsubscribe_event(subscriber, from_slug, source)

    async def resubscribe(self, subscriber: Subscriber) -> Subscriber:
        """Restore consent and clear any hard-bounce marker."""
        subscriber.status = True
        subscriber.bounced_at = None
        await self.db.commit()
        await self.db.refresh(subscriber)
        logger.info("Subscriber resubscribed: ucode=%s", subscriber.ucode)
        return subscriber

    async def _record_unsubscribe_event(
        self,
        subscriber: Subscriber,
        from_slug: str | None,
        source: str,
    ) -> None:
        """Best-effort analytics write."""
        try:
            newsletter_id = None
            if from_slug:
                newsletter_id = await self.db.scalar(
                    select(Newsletter.id).where(Newsletter.slug == from_slug)
                )
            self.db.add(
                UnsubscribeEvent(
                    subscriber_id=subscriber.id,
                    newsletter_id=newsletter_id,
                    source=source,
                )
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.warning("Failed to record unsubscribe event: %s", e)
