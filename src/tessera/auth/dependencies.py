"""FastAPI auth dependencies.

Learn: These are used as Depends() in route handlers to extract
and validate the current identity from the request.

Two levels:
1. get_current_user → any valid Bearer access token (pure JWT check)
2. require_admin → additionally holds `admin` *right now*. The check
   reads the store instead of trusting the token's role snapshot, so a
   freshly removed admin loses admin routes immediately.
"""

from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from tessera.auth.jwt import AccessClaims, verify_access_token
from tessera.db.engine import get_db, store_guard
from tessera.errors import TokenInvalidError
from tessera.services.rbac_service import ADMIN_ROLE, Authorizer


class CurrentIdentity:
    """The authenticated user making the request.

    Learn: Built from the verified access token only. `roles` is the
    snapshot taken when the token was issued; use it for display, not
    for gating admin mutations.
    """

    def __init__(self, claims: AccessClaims, token: str):
        self.user_id = claims.user_id
        self.email = claims.email
        self.roles = claims.roles
        self.claims = claims
        self.token = token


async def get_current_user_optional(
    authorization: Optional[str] = Header(None),
) -> Optional[CurrentIdentity]:
    """Extract current identity (optional — returns None if no auth)."""
    if not authorization:
        return None
    if not authorization.startswith("Bearer "):
        raise TokenInvalidError("Invalid authorization header format")

    token = authorization[7:]
    return CurrentIdentity(verify_access_token(token), token)


async def get_current_user(
    identity: Optional[CurrentIdentity] = Depends(get_current_user_optional),
) -> CurrentIdentity:
    """Extract current identity (required — 401 if no auth)."""
    if identity is None:
        raise TokenInvalidError("Authentication required")
    return identity


async def require_admin(
    identity: CurrentIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> CurrentIdentity:
    """Current identity, provided it holds the global `admin` role."""
    async with store_guard():
        await Authorizer(db).require(identity.user_id, ADMIN_ROLE)
    return identity
