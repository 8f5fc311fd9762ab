"""UnsubscribeEvent model: records which campaign led to an unsubscribe."""

import uuid

from sqlalchemy import ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from bulletin.models.base import Base


class UnsubscribeEvent(Base):
    __tablename__ = "unsubscribe_events"

    subscriber_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("subscribers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    newsletter_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("newsletters.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    # "one_click" or "manage"
    source: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<UnsubscribeEvent sub={self.subscriber_id} nl={self.newsletter_id}>"
