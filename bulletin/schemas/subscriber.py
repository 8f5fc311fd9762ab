"""Pydantic schemas for public subscription management."""

from pydantic import EmailStr, Field

from bulletin.schemas.common import BaseSchema


class SubscribeRequest(BaseSchema):
    """Public subscription form."""

    email: EmailStr
    name: str = Field(default="", max_length=255)
    captcha_token: str = ""


class VerifyResponse(BaseSchema):
    """Result of a successful email verification."""

    message: str
    manage_url: str


class SubscriptionResponse(BaseSchema):
    """What a subscriber sees on their manage page."""

    email: str
    name: str
    status: bool
    verified_email: bool
    bounced: bool


class UpdateNameRequest(BaseSchema):
    name: str = Field(..., max_length=255)
