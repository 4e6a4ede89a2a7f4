"""
Bearer token helpers (PyJWT).

Tokens are issued by the auth service; this backend only verifies them.
`create_access_token` exists for operator scripts and tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt

from core.config import AuthConfig
from core.errors import DomainError, ErrorCode


def create_access_token(
    config: AuthConfig,
    user_id: str,
    email: str = "",
    role: str = "user",
    expires_in: Optional[timedelta] = None,
) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "userId": user_id,
        "email": email,
        "role": role,
        "iss": config.issuer,
        "aud": config.audience,
        "iat": now,
        "exp": now + (expires_in or timedelta(minutes=config.access_token_ttl_minutes)),
    }
    return jwt.encode(payload, config.jwt_secret, algorithm=config.algorithm)


def decode_access_token(config: AuthConfig, token: str) -> dict[str, Any]:
    """Verify signature, expiry, issuer and audience."""
    try:
        claims = jwt.decode(
            token,
            config.jwt_secret,
            algorithms=[config.algorithm],
            issuer=config.issuer,
            audience=config.audience,
        )
    except jwt.ExpiredSignatureError:
        raise DomainError(ErrorCode.TOKEN_EXPIRED, "Access token expired")
    except jwt.InvalidTokenError:
        raise DomainError(ErrorCode.INVALID_TOKEN, "Invalid or malformed access token")

    if not claims.get("userId"):
        raise DomainError(ErrorCode.INVALID_TOKEN, "Token is missing the user id")
    return claims


def extract_bearer(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise DomainError(ErrorCode.MISSING_TOKEN, "Access token required")
    token = authorization[len("Bearer "):].strip()
    if not token:
        raise DomainError(ErrorCode.MISSING_TOKEN, "Access token required")
    return token
