"""Rate limiting for public endpoints using slowapi."""

from slowapi import Limiter
from starlette.requests import Request

SUBSCRIBE_RATE_LIMIT = "5/minute"


def get_client_ip(request: Request) -> str:
    """Client IP behind Cloudflare or a reverse proxy.

    Also stored on tracking events, so opens and clicks are attributed to the
    same address the limiter keys on.
    """
    return (
        request.headers.get("CF-Connecting-IP")
        or request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
        or (request.client.host if request.client else "127.0.0.1")
    )


limiter = Limiter(key_func=get_client_ip, headers_enabled=False)
