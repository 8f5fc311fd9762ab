"""NewsletterLink model: campaign-scoped short URL cache."""

import uuid

from sqlalchemy import ForeignKey, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from bulletin.models.base import Base


class NewsletterLink(Base):
    """Maps a long URL to its short URL for one campaign."""

    __tablename__ = "newsletter_links"
    __table_args__ = (
        UniqueConstraint(
            "newsletter_id", "original_url", name="uq_newsletter_links_newsletter_url"
        ),
    )

    newsletter_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("newsletters.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    original_url: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    short_url: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<NewsletterLink {self.original_url} -> {self.short_url}>"
