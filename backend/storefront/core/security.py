"""
Access token validation and request rate limiting.

Tokens are issued by the authentication service; this backend only needs
to validate them and extract the subject. The rate limiter is shared by
the routers that decorate endpoints and by the application that installs
the exceeded-limit handler.
"""

from typing import Any, Dict

from jose import JWTError, jwt
from slowapi import Limiter
from slowapi.util import get_remote_address

from storefront.core.config import get_settings
from storefront.core.logging import get_logger

settings = get_settings()
logger = get_logger(__name__)

limiter = Limiter(
    key_func=get_remote_address,
    enabled=settings.rate_limit_enabled,
)


class SecurityError(Exception):
    """Base exception for security-related errors."""

    def __init__(self, message: str, code: str, **context):
        super().__init__(message)
        self.code = code
        self.context = context


class TokenError(SecurityError):
    """Exception raised for token-related errors."""

    pass


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate a JWT access token.

    Args:
        token: JWT token string to decode

    Returns:
        Dictionary of decoded token claims

    Raises:
        TokenError: If token is empty, invalid, expired, or malformed
    """
    if not token:
        logger.warning("Attempted to decode empty token")
        raise TokenError("Token cannot be empty", code="EMPTY_TOKEN")

    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError as e:
        logger.warning("Token has expired", error=str(e))
        raise TokenError("Token has expired", code="TOKEN_EXPIRED") from e
    except JWTError as e:
        logger.warning(
            "Invalid token",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise TokenError(
            "Invalid token",
            code="TOKEN_INVALID",
            original_error=str(e),
        ) from e

    logger.debug(
        "Token decoded successfully",
        subject=payload.get("sub"),
        expires_at=payload.get("exp"),
    )
    return payload
