"""Captcha verification for public subscription forms."""

import logging
from typing import Protocol

import httpx

from bulletin.core.config import settings

logger = logging.getLogger(__name__)

TURNSTILE_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"


class CaptchaError(Exception):
    """Raised when the captcha provider cannot be reached."""


class CaptchaVerifier(Protocol):
    async def verify(self, token: str) -> bool: ...


class TurnstileVerifier:
    """Cloudflare Turnstile siteverify client."""

    def __init__(self, secret: str) -> None:
        self.secret = secret

    async def verify(self, token: str) -> bool:
        """Return True if the token passed the challenge.

        Raises:
            CaptchaError: If the verification request fails.
        """
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(
                    TURNSTILE_VERIFY_URL,
                    data={"response": token, "secret": self.secret},
                )
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise CaptchaError(f"Captcha verification request failed: {e}") from e

        return bool(data.get("success", False))


class NoopVerifier:
    """Accepts every token; used when no captcha secret is configured."""

    async def verify(self, token: str) -> bool:
        return True


def get_captcha_verifier() -> CaptchaVerifier:
    if not settings.turnstile_secret:
        return NoopVerifier()
    return TurnstileVerifier(settings.turnstile_secret)
