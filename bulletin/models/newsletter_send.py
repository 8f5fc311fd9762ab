"""NewsletterSend model: one delivery record per subscriber and campaign."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from bulletin.models.base import Base


class SendStatus(str, enum.Enum):
    """Delivery status of a single recipient."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class NewsletterSend(Base):
    """Send record used for resumability.

    A resumed send skips subscribers whose record is already ``sent``.
    Records are created idempotently, keyed by (newsletter, subscriber).
    """

    __tablename__ = "newsletter_sends"
    __table_args__ = (
        UniqueConstraint(
            "newsletter_id", "subscriber_id", name="uq_newsletter_sends_newsletter_subscriber"
        ),
    )

    newsletter_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("newsletters.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    subscriber_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("subscribers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[SendStatus] = mapped_column(
        Enum(
            SendStatus,
            name="send_status",
            values_callable=lambda x: [e.value for e in x],
        ),
        default=SendStatus.PENDING,
        nullable=False,
    )
    sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<NewsletterSend {self.newsletter_id}/{self.subscriber_id} ({self.status.value})>"
