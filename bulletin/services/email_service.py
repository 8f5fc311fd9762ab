"""Email delivery over SMTP using aiosmtplib."""

import logging
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Protocol

import aiosmtplib
from jinja2 import Environment, FileSystemLoader

from bulletin.core.config import settings

logger = logging.getLogger(__name__)

# Jinja2 template environment
TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"
_jinja_env = Environment(loader=FileSystemLoader(str(TEMPLATE_DIR)), autoescape=True)


class EmailDeliveryError(Exception):
    """Raised when a message could not be delivered.

    ``permanent`` is True for hard bounces (SMTP 5xx, refused recipients);
    anything else is transient.
    """

    def __init__(self, message: str, permanent: bool = False) -> None:
        super().__init__(message)
        self.permanent = permanent

    @property
    def is_hard_bounce(self) -> bool:
        return self.permanent


class EmailTransport(Protocol):
    """Accepts a fully rendered message and delivers it."""

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        headers: dict[str, str] | None = None,
    ) -> None: ...


def _classify(exc: Exception) -> EmailDeliveryError:
    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused):
        codes = [r.code for r in exc.recipients]
        permanent = any(code >= 500 for code in codes) if codes else True
        return EmailDeliveryError(f"Recipients refused: {exc}", permanent=permanent)
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        return EmailDeliveryError(f"SMTP {exc.code}: {exc.message}", permanent=exc.code >= 500)
    return EmailDeliveryError(f"SMTP error: {exc}", permanent=False)


class SmtpEmailService:
    """Sends HTML email through an SMTP relay."""

    def __init__(
        self,
        host: str,
        port: int,
        from_email: str,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = False,
    ) -> None:
        self.host = host
        self.port = port
        self.from_email = from_email
        self.username = username
        self.password = password
        self.use_tls = use_tls

    def build_message(
        self,
        to: str,
        subject: str,
        html_body: str,
        headers: dict[str, str] | None = None,
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.from_email
        msg["To"] = to
        msg["Subject"] = subject
        for name, value in (headers or {}).items():
            msg[name] = value
        msg.set_content(html_body, subtype="html")
        return msg

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Deliver one message.

        Raises:
            EmailDeliveryError: Classified as permanent or transient.
        """
        try:
            msg = self.build_message(to, subject, html_body, headers)
        except ValueError as e:
            # Header values with line breaks are rejected by EmailMessage
            raise EmailDeliveryError(f"Invalid message: {e}", permanent=False) from e

        kwargs: dict[str, Any] = {
            "hostname": self.host,
            "port": self.port,
            "start_tls": self.use_tls,
        }
        if self.username and self.password:
            kwargs["username"] = self.username
            kwargs["password"] = self.password

        try:
            await aiosmtplib.send(msg, **kwargs)
        except aiosmtplib.SMTPException as e:
            raise _classify(e) from e
        except OSError as e:
            raise EmailDeliveryError(f"Connection error: {e}", permanent=False) from e

        logger.debug("Email sent: to=%s subject=%s", to, subject)


async def send_verification_email(
    transport: EmailTransport,
    to: str,
    verify_url: str,
) -> None:
    """Send the double opt-in confirmation email."""
    template = _jinja_env.get_template("verification.html")
    html_body = template.render(
        verify_url=verify_url,
        project_name=settings.project_name,
        ttl_hours=settings.verification_token_ttl_hours,
    )
    await transport.send(to, f"Confirm your subscription to {settings.project_name}", html_body)


_email_service: SmtpEmailService | None = None


def get_email_service() -> SmtpEmailService:
    """Get or create the SMTP email service singleton."""
    global _email_service
    if _email_service is None:
        _email_service = SmtpEmailService(
            host=settings.smtp_host,
            port=settings.smtp_port,
            from_email=settings.smtp_from_email,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_tls,
        )
    return _email_service
