"""Newsletter (campaign) model and its send-state machine."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from bulletin.models.base import Base


class NewsletterStatus(str, enum.Enum):
    """Status of a newsletter campaign.

    draft -> scheduled -> sending -> {paused, sent, failed}
    paused -> sending (resend) or paused -> sent (finalize)
    scheduled -> draft (cancel)
    """

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    PAUSED = "paused"
    SENT = "sent"
    FAILED = "failed"

    @property
    def is_sendable(self) -> bool:
        """Whether the send orchestrator may start or resume from this status."""
        return self in (NewsletterStatus.DRAFT, NewsletterStatus.SCHEDULED, NewsletterStatus.PAUSED)

    @property
    def is_editable(self) -> bool:
        """Only drafts may be edited or deleted."""
        return self is NewsletterStatus.DRAFT


class Newsletter(Base):
    """One authored document plus its send progress.

    The slug is unique and doubles as the tracking topic. ``total_count`` is
    fixed when a send starts and equals the eligible-recipient snapshot size.
    """

    __tablename__ = "newsletters"
    __table_args__ = (Index("ix_newsletters_status_scheduled_at", "status", "scheduled_at"),)

    title: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
    )
    slug: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
        index=True,
    )
    markdown_content: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
    )
    template_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("newsletter_templates.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Cached sanitized output, set when first sent
    rendered_html: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    status: Mapped[NewsletterStatus] = mapped_column(
        Enum(
            NewsletterStatus,
            name="newsletter_status",
            values_callable=lambda x: [e.value for e in x],
        ),
        default=NewsletterStatus.DRAFT,
        nullable=False,
    )

    # Timing
    scheduled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    sending_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    sending_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Progress counters
    sent_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    failed_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    total_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Newsletter {self.slug} ({self.status.value})>"
