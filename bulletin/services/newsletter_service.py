"""Newsletter campaigns: the send orchestrator, state transitions and stats."""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bulletin.core.logging_config import newsletter_id_var
from bulletin.core.security import compute_admin_link, compute_openhash
from bulletin.models.email_event import EmailEvent, EmailEventType
from bulletin.models.newsletter import Newsletter, NewsletterStatus
from bulletin.models.newsletter_link import NewsletterLink
from bulletin.models.newsletter_send import NewsletterSend, SendStatus
from bulletin.models.newsletter_template import NewsletterTemplate
from bulletin.models.subscriber import Subscriber
from bulletin.models.unsubscribe_event import UnsubscribeEvent
from bulletin.schemas.newsletter import (
    LinkClickStats,
    NewsletterCreate,
    NewsletterStats,
    NewsletterUpdate,
)
from bulletin.services.content_service import (
    TemplateRenderError,
    build_list_unsubscribe_headers,
    build_tracking_pixel,
    build_unsubscribe_urls,
    build_web_url,
    extract_link_texts,
    personalize_email,
    render_markdown,
    replace_recipient_name,
    rewrite_links_for_tracking,
    sanitize_html,
    shorten_links,
)
from bulletin.services.email_service import EmailDeliveryError, EmailTransport
from bulletin.services.shorturl_service import ShortUrlService

logger = logging.getLogger(__name__)

SLUG_MAX_LENGTH = 50


class SendError(Exception):
    """Fatal to one send attempt; the campaign keeps its last durable status."""


class NewsletterStateError(ValueError):
    """Raised when an action is not allowed in the campaign's current status."""


@dataclass
class SendSummary:
    """Outcome of one orchestrator pass."""

    newsletter_id: UUID
    status: NewsletterStatus
    sent: int = 0
    failed: int = 0
    total: int = 0
    skipped: int = 0


def generate_slug(title: str, now: datetime | None = None) -> str:
    """Build a URL-safe slug from a title plus a Unix timestamp suffix."""
    now = now or datetime.now(UTC)
    sanitized = "".join(c if c.isalnum() or c == "-" else "-" for c in title)
    short = sanitized.strip("-").lower()[:SLUG_MAX_LENGTH] or "newsletter"
    return f"{short}-{int(now.timestamp())}"


async def resolve_template_html(
    session: AsyncSession,
    template_id: UUID | None,
    default_slug: str,
) -> str | None:
    """Return the campaign's template body, falling back to the default slug."""
    if template_id is not None:
        html_body = await session.scalar(
            select(NewsletterTemplate.html_body).where(NewsletterTemplate.id == template_id)
        )
        if html_body is not None:
            return html_body
    return await session.scalar(
        select(NewsletterTemplate.html_body).where(NewsletterTemplate.slug == default_slug)
    )


def _insert_for(session: AsyncSession) -> Any:
    """Pick the dialect's INSERT construct so ON CONFLICT is available."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert


# ---------------------------------------------------------------------------
# Send orchestrator
# ---------------------------------------------------------------------------


class NewsletterSender:
    """Drives one campaign through all eligible recipients.

    Recipients are processed strictly in sequence. Campaign status is
    re-read before every recipient so a pause takes effect after at most one
    in-flight delivery. Every write is committed on its own; resumption
    relies on idempotent send records rather than rollback.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        email: EmailTransport,
        shortener: ShortUrlService | None,
        base_url: str,
        rate_limit_ms: int = 0,
        default_template_slug: str = "default",
    ) -> None:
        self.session_factory = session_factory
        self.email = email
        self.shortener = shortener
        self.base_url = base_url.rstrip("/")
        self.rate_limit_ms = rate_limit_ms
        self.default_template_slug = default_template_slug

    async def send(self, newsletter_id: UUID) -> SendSummary:
        """Send or resume a campaign.

        Raises:
            SendError: On a rejected precondition, missing default template,
                a campaign already claimed by another run or a database
                failure while handling campaign-level state.
        """
        token = newsletter_id_var.set(str(newsletter_id))
        try:
            async with self.session_factory() as session:
                try:
                    return await self._send(session, newsletter_id)
                except SQLAlchemyError as e:
                    raise SendError(f"Database error: {e}") from e
        finally:
            newsletter_id_var.reset(token)

    async def _send(self, session: AsyncSession, newsletter_id: UUID) -> SendSummary:
        newsletter = await session.get(Newsletter, newsletter_id)
        if newsletter is None:
            raise SendError(f"Newsletter {newsletter_id} not found")
        if not newsletter.status.is_sendable:
            raise SendError(f"Cannot send newsletter in status '{newsletter.status.value}'")

        resuming = newsletter.status == NewsletterStatus.PAUSED
        template_html = await resolve_template_html(
            session, newsletter.template_id, self.default_template_slug
        )
        if template_html is None:
            raise SendError(f"Default template '{self.default_template_slug}' not found")

        # Shared content phase
        content_html = sanitize_html(render_markdown(newsletter.markdown_content, self.base_url))

        # Only one run can move the campaign out of a sendable status
        claim = await session.execute(
            update(Newsletter)
            .where(
                Newsletter.id == newsletter.id,
                Newsletter.status.in_([s for s in NewsletterStatus if s.is_sendable]),
            )
            .values(
                status=NewsletterStatus.SENDING,
                rendered_html=content_html,
                sending_started_at=newsletter.sending_started_at or datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if not claim.rowcount:
            raise SendError(f"Newsletter {newsletter.id} is already being sent")

        logger.info(
            "%s newsletter %s (%s)",
            "Resuming" if resuming else "Starting",
            newsletter.slug,
            newsletter.id,
        )

        if self.shortener is not None:
            content_html = await self._shorten(session, self.shortener, newsletter.id, content_html)

        subscribers = await self._snapshot_recipients(session)
        await self._ensure_pending_records(session, newsletter.id, subscribers)
        records = await self._load_record_statuses(session, newsletter.id)

        # Recipients attempted in an earlier pass who are no longer eligible
        # (bounced, unsubscribed) still count towards this campaign.
        eligible = {subscriber.id for subscriber in subscribers}
        departed = [status for sid, status in records.items() if sid not in eligible]
        summary = SendSummary(
            newsletter_id=newsletter.id,
            status=NewsletterStatus.SENDING,
            sent=departed.count(SendStatus.SENT),
            failed=departed.count(SendStatus.FAILED),
        )
        summary.total = len(subscribers) + summary.sent + summary.failed
        newsletter.total_count = summary.total
        await session.commit()
        paused = False

        for index, subscriber in enumerate(subscribers):
            current = await session.scalar(
                select(Newsletter.status).where(Newsletter.id == newsletter.id)
            )
            if current == NewsletterStatus.PAUSED:
                paused = True
                break

            if records.get(subscriber.id) == SendStatus.SENT:
                summary.sent += 1
                summary.skipped += 1
                continue

            await self._deliver(
                session, newsletter, template_html, content_html, subscriber, summary
            )

            await session.execute(
                update(Newsletter)
                .where(Newsletter.id == newsletter.id)
                .values(sent_count=summary.sent, failed_count=summary.failed)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

            if self.rate_limit_ms > 0 and index < len(subscribers) - 1:
                await asyncio.sleep(self.rate_limit_ms / 1000)

        await session.execute(
            update(Newsletter)
            .where(Newsletter.id == newsletter.id)
            .values(sent_count=summary.sent, failed_count=summary.failed)
            .execution_options(synchronize_session=False)
        )

        if paused:
            await session.commit()
            summary.status = NewsletterStatus.PAUSED
            logger.info(
                "Newsletter %s paused: sent=%d failed=%d total=%d",
                newsletter.slug,
                summary.sent,
                summary.failed,
                summary.total,
            )
            return summary

        final = (
            NewsletterStatus.FAILED
            if summary.failed > 0 and summary.sent == 0
            else NewsletterStatus.SENT
        )
        # A pause that lands after the last recipient is left untouched
        result = await session.execute(
            update(Newsletter)
            .where(Newsletter.id == newsletter.id, Newsletter.status == NewsletterStatus.SENDING)
            .values(status=final, sending_completed_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        summary.status = final if result.rowcount else NewsletterStatus.PAUSED

        logger.info(
            "Newsletter %s finished: status=%s sent=%d failed=%d total=%d",
            newsletter.slug,
            summary.status.value,
            summary.sent,
            summary.failed,
            summary.total,
        )
        return summary

    async def _shorten(
        self,
        session: AsyncSession,
        shortener: ShortUrlService,
        newsletter_id: UUID,
        content_html: str,
    ) -> str:
        """Shorten links once per campaign, reusing any stored link map."""
        rows = await session.execute(
            select(NewsletterLink.original_url, NewsletterLink.short_url).where(
                NewsletterLink.newsletter_id == newsletter_id
            )
        )
        known = {original: short for original, short in rows.all()}

        shortened_html, pairs = await shorten_links(content_html, shortener, known)

        new_pairs = [(original, short) for original, short in pairs if original not in known]
        if new_pairs:
            await self._store_link_map(newsletter_id, new_pairs)

        return shortened_html

    async def _store_link_map(self, newsletter_id: UUID, pairs: list[tuple[str, str]]) -> None:
        """Best-effort persistence of new link mappings in a separate session."""
        try:
            async with self.session_factory() as session:
                insert = _insert_for(session)
                stmt = insert(NewsletterLink.__table__).on_conflict_do_nothing(
                    index_elements=["newsletter_id", "original_url"]
                )
                now = datetime.now(UTC)
                await session.execute(
                    stmt,
                    [
                        {
                            "id": uuid.uuid4(),
                            "newsletter_id": newsletter_id,
                            "original_url": original,
                            "short_url": short,
                            "created_at": now,
                            "updated_at": now,
                        }
                        for original, short in pairs
                    ],
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning("Failed to store link map for newsletter %s: %s", newsletter_id, e)

    async def _snapshot_recipients(self, session: AsyncSession) -> list[Subscriber]:
        result = await session.execute(
            select(Subscriber)
            .where(
                Subscriber.status.is_(True),
                Subscriber.verified_email.is_(True),
                Subscriber.bounced_at.is_(None),
            )
            .order_by(Subscriber.created_at, Subscriber.id)
        )
        return list(result.scalars().all())

    async def _ensure_pending_records(
        self,
        session: AsyncSession,
        newsletter_id: UUID,
        subscribers: list[Subscriber],
    ) -> None:
        """Create one pending record per recipient without touching existing ones."""
        if not subscribers:
            return
        now = datetime.now(UTC)
        rows = [
            {
                "id": uuid.uuid4(),
                "newsletter_id": newsletter_id,
                "subscriber_id": subscriber.id,
                "status": SendStatus.PENDING,
                "created_at": now,
                "updated_at": now,
            }
            for subscriber in subscribers
        ]
        insert = _insert_for(session)
        stmt = insert(NewsletterSend.__table__).on_conflict_do_nothing(
            index_elements=["newsletter_id", "subscriber_id"]
        )
        await session.execute(stmt, rows)
        await session.commit()

    async def _load_record_statuses(
        self, session: AsyncSession, newsletter_id: UUID
    ) -> dict[UUID, SendStatus]:
        rows = await session.execute(
            select(NewsletterSend.subscriber_id, NewsletterSend.status).where(
                NewsletterSend.newsletter_id == newsletter_id
            )
        )
        return {subscriber_id: status for subscriber_id, status in rows.all()}

    def personalize(
        self,
        newsletter: Newsletter,
        template_html: str,
        content_html: str,
        subscriber: Subscriber,
    ) -> tuple[str, dict[str, str]]:
        """Run the per-recipient phase and return (html_body, headers).

        Raises:
            TemplateRenderError: If the template cannot be merged.
        """
        topic = newsletter.slug
        body = rewrite_links_for_tracking(
            content_html, self.base_url, subscriber.ucode, topic, subscriber.secret_code
        )
        body = replace_recipient_name(body, subscriber.name)

        openhash = compute_openhash(subscriber.secret_code, subscriber.ucode, topic, "")
        pixel = build_tracking_pixel(self.base_url, subscriber.ucode, topic, openhash)

        admin_link = compute_admin_link(subscriber.secret_code, subscriber.email)
        manage_url, one_click_url = build_unsubscribe_urls(self.base_url, admin_link, topic)

        html_body = personalize_email(
            template_html,
            body,
            newsletter.title,
            pixel,
            manage_url,
            self.base_url,
            build_web_url(self.base_url, topic),
        )
        return html_body, build_list_unsubscribe_headers(one_click_url, manage_url)

    async def _deliver(
        self,
        session: AsyncSession,
        newsletter: Newsletter,
        template_html: str,
        content_html: str,
        subscriber: Subscriber,
        summary: SendSummary,
    ) -> None:
        """Attempt one recipient and record the outcome."""
        record = (
            update(NewsletterSend)
            .where(
                NewsletterSend.newsletter_id == newsletter.id,
                NewsletterSend.subscriber_id == subscriber.id,
            )
            .execution_options(synchronize_session=False)
        )

        try:
            html_body, headers = self.personalize(
                newsletter, template_html, content_html, subscriber
            )
            await self.email.send(subscriber.email, newsletter.title, html_body, headers)
        except TemplateRenderError as e:
            logger.error("Template error for subscriber %s: %s", subscriber.ucode, e)
            summary.failed += 1
            await session.execute(record.values(status=SendStatus.FAILED, error_message=str(e)))
            return
        except EmailDeliveryError as e:
            logger.error("Failed to send to subscriber %s: %s", subscriber.ucode, e)
            summary.failed += 1
            await session.execute(record.values(status=SendStatus.FAILED, error_message=str(e)))
            if e.is_hard_bounce:
                logger.warning("Marking subscriber %s as bounced", subscriber.ucode)
                await session.execute(
                    update(Subscriber)
                    .where(Subscriber.id == subscriber.id)
                    .values(bounced_at=datetime.now(UTC))
                    .execution_options(synchronize_session=False)
                )
            return
        except Exception as e:
            logger.exception("Unexpected error sending to subscriber %s", subscriber.ucode)
            summary.failed += 1
            await session.execute(
                record.values(status=SendStatus.FAILED, error_message=f"Unexpected error: {e}")
            )
            return

        summary.sent += 1
        await session.execute(
            record.values(status=SendStatus.SENT, sent_at=datetime.now(UTC), error_message=None)
        )


# ---------------------------------------------------------------------------
# State transitions
# ---------------------------------------------------------------------------


async def schedule_newsletter(
    session: AsyncSession, newsletter: Newsletter, when: datetime
) -> Newsletter:
    """draft -> scheduled."""
    if newsletter.status != NewsletterStatus.DRAFT:
        raise NewsletterStateError("Only draft newsletters can be scheduled")
    newsletter.status = NewsletterStatus.SCHEDULED
    newsletter.scheduled_at = when
    await session.commit()
    await session.refresh(newsletter)
    logger.info("Newsletter %s scheduled for %s", newsletter.slug, when.isoformat())
    return newsletter


async def cancel_newsletter(session: AsyncSession, newsletter: Newsletter) -> Newsletter:
    """Cancel according to the current status.

    scheduled -> draft, sending -> paused (picked up by the running loop),
    paused -> sent (partial delivery accepted as final).
    """
    match newsletter.status:
        case NewsletterStatus.SCHEDULED:
            newsletter.status = NewsletterStatus.DRAFT
            newsletter.scheduled_at = None
        case NewsletterStatus.SENDING:
            newsletter.status = NewsletterStatus.PAUSED
        case NewsletterStatus.PAUSED:
            newsletter.status = NewsletterStatus.SENT
            newsletter.sending_completed_at = datetime.now(UTC)
        case _:
            raise NewsletterStateError("Newsletter is not in a cancellable state")
    await session.commit()
    await session.refresh(newsletter)
    logger.info("Newsletter %s cancelled -> %s", newsletter.slug, newsletter.status.value)
    return newsletter


# ---------------------------------------------------------------------------
# CRUD and stats
# ---------------------------------------------------------------------------


class NewsletterService:
    """Service for managing newsletter campaigns."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, newsletter_id: UUID) -> Newsletter | None:
        return await self.db.get(Newsletter, newsletter_id)

    async def get_by_slug(self, slug: str) -> Newsletter | None:
        result = await self.db.execute(select(Newsletter).where(Newsletter.slug == slug))
        return result.scalar_one_or_none()

    async def list_newsletters(
        self, page: int = 1, page_size: int = 20
    ) -> tuple[list[Newsletter], int]:
        """List campaigns, newest first.

        Returns:
            Tuple of (newsletters, total_count)
        """
        total = await self.db.scalar(select(func.count()).select_from(Newsletter)) or 0
        result = await self.db.execute(
            select(Newsletter)
            .order_by(Newsletter.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total

    async def list_sent(self) -> list[Newsletter]:
        """Sent campaigns for the public archive, most recent first."""
        result = await self.db.execute(
            select(Newsletter)
            .where(Newsletter.status == NewsletterStatus.SENT)
            .order_by(Newsletter.sending_completed_at.desc())
        )
        return list(result.scalars().all())

    async def create(self, data: NewsletterCreate) -> Newsletter:
        """Create a draft with a generated slug."""
        slug = generate_slug(data.title)
        suffix = 1
        while await self.get_by_slug(slug) is not None:
            suffix += 1
            slug = f"{generate_slug(data.title)}-{suffix}"

        newsletter = Newsletter(
            title=data.title,
            slug=slug,
            markdown_content=data.markdown_content,
            template_id=data.template_id,
            status=NewsletterStatus.DRAFT,
        )
        self.db.add(newsletter)
        await self.db.commit()
        await self.db.refresh(newsletter)

        logger.info("Newsletter created: id=%s slug=%s", newsletter.id, newsletter.slug)
        return newsletter

    async def update(self, newsletter: Newsletter, data: NewsletterUpdate) -> Newsletter:
        """Update a draft.

        Raises:
            NewsletterStateError: If the campaign is not a draft.
        """
        if not newsletter.status.is_editable:
            raise NewsletterStateError("Only draft newsletters can be edited")

        for field, value in data.model_dump(exclude_unset=True).items():
            setattr(newsletter, field, value)
        await self.db.commit()
        await self.db.refresh(newsletter)
        return newsletter

    async def delete(self, newsletter: Newsletter) -> None:
        """Delete a draft.

        Raises:
            NewsletterStateError: If the campaign is not a draft.
        """
        if not newsletter.status.is_editable:
            raise NewsletterStateError("Only draft newsletters can be deleted")
        await self.db.execute(
            delete(NewsletterSend).where(NewsletterSend.newsletter_id == newsletter.id)
        )
        await self.db.execute(
            delete(NewsletterLink).where(NewsletterLink.newsletter_id == newsletter.id)
        )
        await self.db.delete(newsletter)
        await self.db.commit()
        logger.info("Newsletter deleted: id=%s", newsletter.id)

    async def get_stats(self, newsletter: Newsletter) -> NewsletterStats:
        """Aggregate tracking events for a campaign."""
        topic = newsletter.slug

        def _count(event_type: EmailEventType, distinct: bool) -> Any:
            column = func.count(func.distinct(EmailEvent.ucode)) if distinct else func.count()
            return (
                select(column)
                .select_from(EmailEvent)
                .where(EmailEvent.topic == topic, EmailEvent.event_type == event_type)
            )

        unique_opens = await self.db.scalar(_count(EmailEventType.OPEN, distinct=True)) or 0
        total_clicks = await self.db.scalar(_count(EmailEventType.CLICK, distinct=False)) or 0
        unique_clicks = await self.db.scalar(_count(EmailEventType.CLICK, distinct=True)) or 0

        unsubscribe_count = (
            await self.db.scalar(
                select(func.count())
                .select_from(UnsubscribeEvent)
                .where(UnsubscribeEvent.newsletter_id == newsletter.id)
            )
            or 0
        )

        clicks_col = func.count().label("clicks")
        url_rows = await self.db.execute(
            select(EmailEvent.clicked_url, clicks_col)
            .where(
                EmailEvent.topic == topic,
                EmailEvent.event_type == EmailEventType.CLICK,
                EmailEvent.clicked_url.is_not(None),
            )
            .group_by(EmailEvent.clicked_url)
            .order_by(clicks_col.desc())
        )

        # Clicks are recorded against short URLs; map back to anchor text via the link map
        link_rows = await self.db.execute(
            select(NewsletterLink.short_url, NewsletterLink.original_url).where(
                NewsletterLink.newsletter_id == newsletter.id
            )
        )
        short_to_original = {short: original for short, original in link_rows.all()}
        link_texts = extract_link_texts(newsletter.rendered_html or "")

        links = [
            LinkClickStats(
                url=url,
                text=link_texts.get(short_to_original.get(url, url), ""),
                clicks=clicks,
            )
            for url, clicks in url_rows.all()
        ]

        open_rate = (
            round(unique_opens / newsletter.sent_count * 100, 1) if newsletter.sent_count else 0.0
        )

        return NewsletterStats(
            newsletter_id=newsletter.id,
            title=newsletter.title,
            status=newsletter.status,
            sent_count=newsletter.sent_count,
            failed_count=newsletter.failed_count,
            total_count=newsletter.total_count,
            unique_opens=unique_opens,
            open_rate=open_rate,
            total_clicks=total_clicks,
            unique_clicks=unique_clicks,
            unsubscribe_count=unsubscribe_count,
            links=links,
        )
