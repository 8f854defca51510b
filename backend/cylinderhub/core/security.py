"""
JWT token handling for the acting party.

Tokens are issued by the external auth service; this module only needs to
decode them (and mint them for local tooling and tests). The subject is the
party UUID and the ``role`` claim is informational, since the role stored on
the party row is authoritative.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from uuid import UUID

from jose import JWTError, jwt

from cylinderhub.core.config import get_settings
from cylinderhub.core.logging import get_logger

logger = get_logger(__name__)


class TokenError(Exception):
    """Exception raised for token-related errors."""

    def __init__(self, message: str, code: str, **context):
        super().__init__(message)
        self.code = code
        self.context = context


def create_access_token(
    party_id: UUID,
    role: str,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a signed access token for a party.

    Args:
        party_id: Subject of the token
        role: Role claim
        expires_delta: Optional custom lifetime
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + (
        expires_delta
        or timedelta(minutes=settings.jwt_access_token_expire_minutes)
    )
    claims = {
        "sub": str(party_id),
        "role": role,
        "iat": now,
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(claims, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate a JWT token.

    Raises:
        TokenError: If token is invalid, expired, or malformed
    """
    if not token:
        raise TokenError("Token cannot be empty", code="EMPTY_TOKEN")

    settings = get_settings()
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
        raise TokenError("Invalid token", code="TOKEN_INVALID") from e

    if payload.get("type") != "access":
        raise TokenError("Unexpected token type", code="TOKEN_TYPE_INVALID")

    return payload


def get_token_party_id(payload: Dict[str, Any]) -> UUID:
    """Extract the party UUID from decoded claims."""
    subject = payload.get("sub")
    try:
        return UUID(subject)
    except (AttributeError, TypeError, ValueError) as e:
        raise TokenError("Invalid subject claim", code="TOKEN_SUBJECT_INVALID") from e
