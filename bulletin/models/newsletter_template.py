"""NewsletterTemplate model: reusable HTML shell for campaigns."""

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from bulletin.models.base import Base


class NewsletterTemplate(Base):
    """Jinja2 HTML shell with slots for content, title, tracking_pixel,
    unsubscribe_url, base_url and web_url.

    Campaigns reference a template by id or fall back to the one whose slug
    matches the configured default.
    """

    __tablename__ = "newsletter_templates"

    slug: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    html_body: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<NewsletterTemplate {self.slug}>"
