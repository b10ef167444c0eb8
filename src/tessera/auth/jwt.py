"""JWT access token creation and verification.

Learn: Access tokens are stateless. They carry the user id and a snapshot
of the user's effective role names, and nothing about them is persisted.
Verification is a pure signature + expiry check with no store access, so
it can run fully in parallel. Revoking a user only takes effect once
their current access token expires — the price of statelessness.

Refresh tokens are NOT JWTs: they are opaque, store-backed and rotate
(see services/token_service.py).
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import jwt

from tessera.config import settings
from tessera.errors import TokenExpiredError, TokenInvalidError

ACCESS_TOKEN_TYPE = "access"


@dataclass(frozen=True)
class AccessClaims:
    """Decoded, verified access token contents."""

    user_id: int
    email: str
    roles: frozenset[str]
    issued_at: datetime
    expires_at: datetime
    token_id: str


def create_access_token(
    user_id: int,
    email: str,
    roles: Iterable[str],
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a signed JWT access token."""
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "email": email,
        "roles": sorted(set(roles)),
        "type": ACCESS_TOKEN_TYPE,
        "iss": settings.jwt_issuer,
        "jti": uuid.uuid4().hex,
        "iat": now,
        "nbf": now,
        "exp": now + expires_delta,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_access_token(token: str) -> AccessClaims:
    """Verify and decode an access token.

    Raises TokenExpiredError past `exp`, TokenInvalidError for anything
    else wrong (signature, structure, issuer, token type).
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            options={"require": ["exp", "iat", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise TokenExpiredError("Access token has expired")
    except jwt.InvalidTokenError as e:
        raise TokenInvalidError(f"Invalid token: {e}")

    if payload.get("type") != ACCESS_TOKEN_TYPE:
        raise TokenInvalidError("Not an access token")

    try:
        user_id = int(payload["sub"])
    except (KeyError, ValueError) as exc:
        raise TokenInvalidError("Malformed token subject") from exc

    return AccessClaims(
        user_id=user_id,
        email=payload.get("email", ""),
        roles=frozenset(payload.get("roles", [])),
        issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        token_id=payload.get("jti", ""),
    )
