"""SQLAlchemy models."""

from bulletin.models.base import Base
from bulletin.models.email_event import EmailEvent, EmailEventType
from bulletin.models.newsletter import Newsletter, NewsletterStatus
from bulletin.models.newsletter_link import NewsletterLink
from bulletin.models.newsletter_send import NewsletterSend, SendStatus
from bulletin.models.newsletter_template import NewsletterTemplate
from bulletin.models.subscriber import Subscriber
from bulletin.models.unsubscribe_event import UnsubscribeEvent
from bulletin.models.verification_token import VerificationToken

__all__ = [
    # Base
    "Base",
    # Subscribers
    "Subscriber",
    "VerificationToken",
    "UnsubscribeEvent",
    # Campaigns
    "Newsletter",
    "NewsletterStatus",
    "NewsletterTemplate",
    "NewsletterSend",
    "SendStatus",
    "NewsletterLink",
    # Tracking
    "EmailEvent",
    "EmailEventType",
]
