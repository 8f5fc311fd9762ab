"""Pydantic schemas for newsletter campaigns."""

from datetime import datetime
from uuid import UUID

from pydantic import Field

from bulletin.models.newsletter import NewsletterStatus
from bulletin.schemas.common import BaseSchema

# === Campaign Schemas ===


class NewsletterCreate(BaseSchema):
    """Schema for creating a draft newsletter."""

    title: str = Field(..., min_length=1, max_length=500)
    markdown_content: str = ""
    template_id: UUID | None = None


class NewsletterUpdate(BaseSchema):
    """Schema for updating a draft newsletter."""

    title: str | None = Field(default=None, min_length=1, max_length=500)
    markdown_content: str | None = None
    template_id: UUID | None = None


class NewsletterResponse(BaseSchema):
    """Schema for newsletter response."""

    id: UUID
    title: str
    slug: str
    markdown_content: str
    template_id: UUID | None
    status: NewsletterStatus
    scheduled_at: datetime | None
    sending_started_at: datetime | None
    sending_completed_at: datetime | None
    sent_count: int
    failed_count: int
    total_count: int
    created_at: datetime
    updated_at: datetime


class ScheduleRequest(BaseSchema):
    """Schedule a draft for a future send."""

    scheduled_at: datetime


class SendStatusResponse(BaseSchema):
    """Live send progress, polled by the admin console."""

    status: NewsletterStatus
    sent_count: int
    failed_count: int
    total_count: int


# === Stats Schemas ===


class LinkClickStats(BaseSchema):
    url: str
    text: str
    clicks: int


class NewsletterStats(BaseSchema):
    """Aggregated tracking statistics for one campaign."""

    newsletter_id: UUID
    title: str
    status: NewsletterStatus
    sent_count: int
    failed_count: int
    total_count: int
    unique_opens: int
    open_rate: float
    total_clicks: int
    unique_clicks: int
    unsubscribe_count: int
    links: list[LinkClickStats]


# === Public Archive Schemas ===


class ArchiveItem(BaseSchema):
    """A sent newsletter in the public archive."""

    title: str
    slug: str
    sending_completed_at: datetime | None
