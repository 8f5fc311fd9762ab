"""Subscriber identity and tracking primitives.

Every subscriber owns a fixed-length random ``secret_code`` that never leaves
the server. Public tokens are derived from it:

- ``admin_link``: SHA-256 of ``secret_code || email``, used as the
  "manage my subscription" URL segment.
- ``openhash``: HMAC-SHA256 keyed by ``secret_code`` over
  ``"{ucode}:{topic}:{url}"``. Tracking pixels use ``url=""``; click
  redirects use the destination URL, so each (subscriber, campaign, link)
  triple carries its own unforgeable tag and no per-link table is needed.
"""

import hashlib
import hmac
import secrets

SECRET_CODE_BYTES = 32
UCODE_BYTES = 4


def generate_secret_code() -> str:
    """Generate a random secret code (32 bytes -> 64 hex chars)."""
    return secrets.token_hex(SECRET_CODE_BYTES)


def generate_token() -> str:
    """Generate a random single-use token (32 bytes -> 64 hex chars)."""
    return secrets.token_hex(SECRET_CODE_BYTES)


def generate_ucode() -> str:
    """Generate a short public subscriber code (8 hex chars)."""
    return secrets.token_hex(UCODE_BYTES)


def compute_admin_link(secret_code: str, email: str) -> str:
    """Compute admin_link = SHA256(secret_code || email)."""
    digest = hashlib.sha256()
    digest.update(secret_code.encode())
    digest.update(email.encode())
    return digest.hexdigest()


def verify_admin_link(provided: str, expected: str) -> bool:
    """Constant-time comparison of two derived tokens."""
    a = provided.encode()
    b = expected.encode()
    if len(a) != len(b):
        return False
    return hmac.compare_digest(a, b)


def compute_openhash(secret_code: str, ucode: str, topic: str, url: str = "") -> str:
    """Compute openhash = HMAC-SHA256(secret_code, "ucode:topic:url")."""
    message = f"{ucode}:{topic}:{url}"
    return hmac.new(secret_code.encode(), message.encode(), hashlib.sha256).hexdigest()


def verify_openhash(secret_code: str, ucode: str, topic: str, url: str, provided: str) -> bool:
    """Recompute the openhash and compare in constant time."""
    expected = compute_openhash(secret_code, ucode, topic, url)
    return verify_admin_link(provided, expected)
