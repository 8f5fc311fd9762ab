"""Subscriber model: delivery identity and tracking secrets."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from bulletin.models.base import Base


class Subscriber(Base):
    """A newsletter recipient.

    ``secret_code`` is generated once at creation and never rotated or
    exposed; public tokens (admin link, tracking hashes) are derived from it.
    ``ucode`` is the short public identifier embedded in tracking URLs.

    A subscriber receives newsletters only while ``status`` and
    ``verified_email`` are true and ``bounced_at`` is NULL. A hard bounce sets
    ``bounced_at``; resubscribing clears it.
    """

    __tablename__ = "subscribers"

    email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
    )
    status: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    verified_email: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    secret_code: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    ucode: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        unique=True,
        index=True,
    )

    # Admin link imported from a prior system that used a different derivation
    legacy_admin_link: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )
    subscription_source: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    bounced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    @property
    def is_eligible(self) -> bool:
        """Whether this subscriber may receive newsletters."""
        return self.status and self.verified_email and self.bounced_at is None

    def __repr__(self) -> str:
        return f"<Subscriber {self.ucode} active={self.status}>"
