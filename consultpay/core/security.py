"""Token verification and shared-secret checks.

Tokens are issued by the identity service; this service only verifies them.
"""

import hmac
from typing import Any

from jose import JWTError, jwt

from consultpay.config import settings
from consultpay.core.exceptions import AuthenticationError


def verify_token(token: str, token_type: str = "access") -> dict[str, Any]:
    """Verify and decode a JWT token."""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as e:
        raise AuthenticationError(f"Token validation failed: {str(e)}")

    if payload.get("type") != token_type:
        raise AuthenticationError("Invalid token type")
    return payload


def verify_shared_secret(presented: str | None, expected: str) -> bool:
    """Constant-time comparison for cron and internal callers."""
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))
