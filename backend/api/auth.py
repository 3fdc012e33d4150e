"""
Session Tokens
==============
HS256 bearer tokens for signed-in customers and admins. The token only
names the account and its role; every request resolves it into an explicit
`Caller` that is handed to the storefront.

pip install PyJWT
"""

from datetime import timedelta
from typing import Optional

import jwt
import structlog
from fastapi import Request

from config import settings
from pipeline.errors import AuthenticationError
from pipeline.models import Account, Caller, normalize_role, utcnow

logger = structlog.get_logger().bind(component="auth")


def issue_token(
    account: Account,
    secret: Optional[str] = None,
    algorithm: Optional[str] = None,
    max_age_seconds: Optional[int] = None,
) -> str:
    now = utcnow()
    max_age = max_age_seconds or settings.SESSION_MAX_AGE_SECONDS
    claims = {
        "sub": account.account_id,
        "role": account.role.value,
        "iat": now,
        "exp": now + timedelta(seconds=max_age),
    }
    return jwt.encode(claims, secret or settings.JWT_SECRET, algorithm=algorithm or settings.JWT_ALGORITHM)


def decode_token(token: str, secret: Optional[str] = None, algorithm: Optional[str] = None) -> Caller:
    try:
        claims = jwt.decode(
            token,
            secret or settings.JWT_SECRET,
            algorithms=[algorithm or settings.JWT_ALGORITHM],
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as e:
        raise AuthenticationError("Session expired") from e
    except jwt.InvalidTokenError as e:
        logger.info("token_rejected", reason=type(e).__name__)
        raise AuthenticationError("Invalid session token") from e

    return Caller(account_id=claims["sub"], role=normalize_role(claims.get("role")))


def caller_from_header(authorization: Optional[str], secret: Optional[str] = None) -> Caller:
    """No header means an anonymous caller; a bad header is an error."""
    if not authorization:
        return Caller.anonymous()
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Malformed authorization header")
    return decode_token(token.strip(), secret=secret)


async def get_caller(request: Request) -> Caller:
    """FastAPI dependency resolving the request's caller."""
    secret = getattr(request.app.state, "jwt_secret", None)
    return caller_from_header(request.headers.get("authorization"), secret=secret)
