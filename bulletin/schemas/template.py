"""Pydantic schemas for newsletter templates."""

from datetime import datetime
from uuid import UUID

from pydantic import Field

from bulletin.schemas.common import BaseSchema


class TemplateCreate(BaseSchema):
    """Schema for creating a newsletter template."""

    slug: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9-]+$")
    name: str = Field(..., min_length=1, max_length=255)
    html_body: str = Field(..., min_length=1)


class TemplateUpdate(BaseSchema):
    """Schema for updating a newsletter template."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    html_body: str | None = Field(default=None, min_length=1)


class TemplateResponse(BaseSchema):
    """Schema for template response."""

    id: UUID
    slug: str
    name: str
    html_body: str
    created_at: datetime
    updated_at: datetime
