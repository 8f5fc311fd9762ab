"""Open and click tracking.

Tracking requests are authenticated by recomputing the openhash from the
subscriber's secret. Verification only decides whether an event is stored;
the caller's response never depends on it.
"""

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bulletin.core.security import verify_openhash
from bulletin.models.email_event import EmailEvent, EmailEventType
from bulletin.models.subscriber import Subscriber

logger = logging.getLogger(__name__)


class TrackingService:
    """Records tracking events on a best-effort basis."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _is_authentic(self, ucode: str, topic: str, url: str, openhash: str) -> bool:
        secret_code = await self.db.scalar(
            select(Subscriber.secret_code).where(Subscriber.ucode == ucode)
        )
        if secret_code is None:
            return False
        return verify_openhash(secret_code, ucode, topic, url, openhash)

    async def record(
        self,
        event_type: EmailEventType,
        ucode: str,
        topic: str,
        openhash: str,
        url: str = "",
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> bool:
        """Store an event if its hash verifies.

        Returns True if an event was stored. Database failures are logged and
        reported as False.
        """
        try:
            if not await self._is_authentic(ucode, topic, url, openhash):
                return False

            self.db.add(
                EmailEvent(
                    ucode=ucode,
                    event_type=event_type,
                    topic=topic,
                    ip=ip,
                    user_agent=user_agent,
                    clicked_url=url if event_type == EmailEventType.CLICK else None,
                )
            )
            await self.db.commit()
            return True
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.warning("Failed to record %s event: %s", event_type.value, e)
            return False
