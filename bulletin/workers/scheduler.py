"""Background scheduler that launches due newsletter sends.

One long-lived asyncio task polls for campaigns with ``status = scheduled``
and ``scheduled_at <= now``. Each due campaign is sent in its own task, so a
slow or paused send never delays the next poll. There is no persistent lock:
a crash mid-send leaves the campaign ``sending`` for manual inspection.
"""

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bulletin.models.newsletter import Newsletter, NewsletterStatus
from bulletin.services.newsletter_service import NewsletterSender

logger = logging.getLogger(__name__)


class NewsletterScheduler:
    """Polls for due scheduled campaigns and triggers their sends."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sender_factory: Callable[[], NewsletterSender],
        interval_secs: float = 30,
    ) -> None:
        self.session_factory = session_factory
        self.sender_factory = sender_factory
        self.interval_secs = interval_secs
        self._loop_task: asyncio.Task[None] | None = None
        # Strong references so running sends are not garbage collected
        self._send_tasks: dict[asyncio.Task[object], UUID] = {}

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def _due_newsletter_ids(self) -> list[UUID]:
        now = datetime.now(UTC)
        async with self.session_factory() as session:
            result = await session.execute(
                select(Newsletter.id)
                .where(
                    Newsletter.status == NewsletterStatus.SCHEDULED,
                    Newsletter.scheduled_at <= now,
                )
                .order_by(Newsletter.scheduled_at)
            )
            return list(result.scalars().all())

    def _on_send_done(self, task: asyncio.Task[object]) -> None:
        newsletter_id = self._send_tasks.pop(task, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Scheduled send of newsletter %s failed: %s", newsletter_id, exc)

    def launch(self, newsletter_id: UUID) -> asyncio.Task[object]:
        """Start a send in its own task without waiting for it."""
        sender = self.sender_factory()
        task: asyncio.Task[object] = asyncio.create_task(
            sender.send(newsletter_id), name=f"newsletter-send-{newsletter_id}"
        )
        self._send_tasks[task] = newsletter_id
        task.add_done_callback(self._on_send_done)
        return task

    async def tick(self) -> list[UUID]:
        """Launch every due campaign once.

        Returns:
            IDs of the campaigns that were launched
        """
        try:
            due = await self._due_newsletter_ids()
        except SQLAlchemyError:
            logger.exception("Failed to query scheduled newsletters")
            return []

        in_flight = set(self._send_tasks.values())
        launched: list[UUID] = []
        for newsletter_id in due:
            if newsletter_id in in_flight:
                continue
            logger.info("Triggering scheduled newsletter %s", newsletter_id)
            self.launch(newsletter_id)
            launched.append(newsletter_id)
        return launched

    async def run_forever(self) -> None:
        """Sleep one interval, then tick, for the life of the process."""
        logger.info("Newsletter scheduler started (interval=%ss)", self.interval_secs)
        while True:
            await asyncio.sleep(self.interval_secs)
            await self.tick()

    async def wait_for_sends(self) -> None:
        """Wait until every launched send has finished."""
        if self._send_tasks:
            await asyncio.gather(*list(self._send_tasks), return_exceptions=True)

    def start(self) -> None:
        if self.running:
            return
        self._loop_task = asyncio.create_task(self.run_forever(), name="newsletter-scheduler")

    async def stop(self) -> None:
        """Stop polling. Sends already in flight keep running to their next pause point."""
        if self._loop_task is None:
            return
        self._loop_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._loop_task
        self._loop_task = None
        logger.info("Newsletter scheduler stopped")
