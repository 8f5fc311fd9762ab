"""EmailEvent model for open and click tracking."""

import enum

from sqlalchemy import Enum, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from bulletin.models.base import Base


class EmailEventType(str, enum.Enum):
    """Kind of tracking event."""

    OPEN = "open"
    CLICK = "click"


class EmailEvent(Base):
    """Append-only tracking event.

    Used for analytics aggregation only, never for authorization. ``topic`` is
    the campaign slug.
    """

    __tablename__ = "email_events"

    ucode: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        index=True,
    )
    event_type: Mapped[EmailEventType] = mapped_column(
        Enum(
            EmailEventType,
            name="email_event_type",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        index=True,
    )
    topic: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    ip: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    user_agent: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    clicked_url: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<EmailEvent {self.event_type.value} {self.ucode}@{self.topic}>"
