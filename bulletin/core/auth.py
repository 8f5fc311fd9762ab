"""Admin authentication for FastAPI using HS256 bearer tokens.

Tokens are issued outside this service (admin login is handled by the
console). A valid token carries the admin email in ``sub`` and must not be
expired; the email must also be on the configured admin allow-list.
"""

from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from bulletin.core.config import settings

# HTTP Bearer token security scheme
bearer_scheme = HTTPBearer(auto_error=False)


def verify_admin_token(token: str) -> str:
    """Verify an admin bearer token.

    Args:
        token: The JWT token to verify

    Returns:
        The admin email from the token subject

    Raises:
        HTTPException: 401 if the token is invalid or expired,
            403 if the subject is not an admin
    """
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=["HS256"],
            options={"require": ["sub", "exp"], "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )

    email = str(payload["sub"]).strip().lower()
    if not settings.is_admin_email(email):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not an administrator",
        )
    return email


async def get_current_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    """Get the authenticated admin email from the Authorization header.

    Raises:
        HTTPException: If no token provided or token is invalid
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return verify_admin_token(credentials.credentials)


# Type alias for dependency injection
CurrentAdmin = Annotated[str, Depends(get_current_admin)]
