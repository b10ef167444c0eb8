"""Token service — access/refresh pairs, rotation, reuse detection.

Learn: Two tiers of trust, two different types:
- Access token: short-lived JWT, verified purely cryptographically
  (auth/jwt.py). Never stored, never revoked early.
- Refresh token: opaque random string, stored as a SHA-256 hash, part
  of a *family* (the lineage of rotations from one login).

Refresh family state machine, per token:

    active ──rotate──▶ used            (successor becomes the new active)
    active/used ──logout / reuse──▶ revoked

Presenting a used or revoked token is a REUSE signal: someone replayed a
token that was already rotated — most likely a thief racing the real
client. The whole family is revoked (including the current, never
presented successor) and the caller gets ReuseDetectedError, which means
"log in again".

Rotation is two conditional UPDATEs in one transaction:

    UPDATE refresh_token_families SET rotated_at = now
    WHERE id = :family AND revoked_at IS NULL

    UPDATE refresh_tokens SET used_at = now
    WHERE id = :id AND used_at IS NULL AND revoked_at IS NULL

Both must hit one row before the successor is inserted. A revoked family
answers 0 on the first; a token someone else rotated answers 0 on the
second. Either way the caller is treated as a replay. Two concurrent
refreshes with the same token therefore never both succeed, and a family
never has two active tokens.

Revocation marks the family row first and sweeps the token rows after.
Both paths lock the family row before touching any token, so a revocation
that waits on an in-flight rotation sweeps the successor too, and a
rotation that waits on a revocation finds the family closed.

Nothing here retries. Retry policy belongs to the caller.
"""

import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import NoReturn, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tessera.auth.jwt import AccessClaims, create_access_token, verify_access_token
from tessera.config import settings
from tessera.db.models import RefreshToken, RefreshTokenFamily, User, as_utc, utcnow
from tessera.errors import (
    NotFoundError,
    ReuseDetectedError,
    TokenExpiredError,
    TokenNotFoundError,
)
from tessera.services.rbac_service import Authorizer

logger = structlog.get_logger()

REFRESH_TOKEN_PREFIX = "rt_"


def hash_token(raw: str) -> str:
    return hashlib.sha256(raw.encode()).hexdigest()


def new_refresh_token() -> str:
    return f"{REFRESH_TOKEN_PREFIX}{secrets.token_urlsafe(32)}"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime, seconds
    family_id: str
    refresh_expires_at: datetime


@dataclass(frozen=True)
class Rotation:
    pair: TokenPair
    user_id: int
    family_id: str
    consumed_token_hash: str


@dataclass(frozen=True)
class Revocation:
    user_id: int
    family_id: str
    revoked: int  # tokens newly revoked; 0 when already revoked


class TokenService:
    """Issues, verifies and rotates tokens. Owns the refresh token tables."""

    def __init__(
        self,
        db: AsyncSession,
        access_ttl: Optional[timedelta] = None,
        refresh_ttl: Optional[timedelta] = None,
    ):
        self.db = db
        self.access_ttl = access_ttl or timedelta(
            minutes=settings.access_token_expire_minutes
        )
        self.refresh_ttl = refresh_ttl or timedelta(
            days=settings.refresh_token_expire_days
        )

    # ─── Issue ──────────────────────────────────────────

    async def issue(self, user: User) -> TokenPair:
        """Start a new family for a fresh login."""
        family_id = str(uuid.uuid4())
        self.db.add(RefreshTokenFamily(id=family_id, user_id=user.id))
        raw, expires_at = await self._insert_refresh(user.id, family_id)
        await self.db.commit()
        access = await self._access_token_for(user)

        logger.info("token.issued", user_id=user.id, family_id=family_id)
        return TokenPair(
            access_token=access,
            refresh_token=raw,
            expires_in=int(self.access_ttl.total_seconds()),
            family_id=family_id,
            refresh_expires_at=expires_at,
        )

    # ─── Verify (pure) ──────────────────────────────────

    @staticmethod
    def verify_access_token(token: str) -> AccessClaims:
        """Signature + expiry only. Never touches the store."""
        return verify_access_token(token)

    # ─── Rotate ─────────────────────────────────────────

    async def rotate(self, raw_refresh_token: str) -> Rotation:
        token_hash = hash_token(raw_refresh_token)
        token = await self._lookup(token_hash)
        # Plain values: a rollback below would expire the ORM object
        token_id, user_id, family_id = token.id, token.user_id, token.family_id
        log = logger.bind(user_id=user_id, family_id=family_id)

        if token.state != "active":
            await self._reuse_detected(user_id, family_id, reason=token.state)

        now = utcnow()
        if as_utc(token.expires_at) <= now:
            raise TokenExpiredError("Refresh token has expired")

        user = await self.db.get(User, user_id)
        if user is None or not user.is_active:
            await self._revoke_family(family_id)
            raise NotFoundError("User not found")

        if not await self._claim_family(family_id, now):
            # Revoked after we read the token
            await self.db.rollback()
            await self._reuse_detected(user_id, family_id, reason="revoked")

        result = await self.db.execute(
            update(RefreshToken)
            .where(
                RefreshToken.id == token_id,
                RefreshToken.used_at.is_(None),
                RefreshToken.revoked_at.is_(None),
            )
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # A concurrent refresh consumed it between our read and write
            await self.db.rollback()
            await self._reuse_detected(user_id, family_id, reason="race")

        raw, expires_at = await self._insert_refresh(user_id, family_id)
        await self.db.commit()

        access = await self._access_token_for(user)
        log.info("token.rotated")
        return Rotation(
            pair=TokenPair(
                access_token=access,
                refresh_token=raw,
                expires_in=int(self.access_ttl.total_seconds()),
                family_id=family_id,
                refresh_expires_at=expires_at,
            ),
            user_id=user_id,
            family_id=family_id,
            consumed_token_hash=token_hash,
        )

    # ─── Revoke ─────────────────────────────────────────

    async def revoke_family(self, raw_refresh_token: str) -> Revocation:
        """Logout. Idempotent: an already revoked family revokes 0 tokens."""
        token = await self._lookup(hash_token(raw_refresh_token))
        user_id, family_id = token.user_id, token.family_id
        revoked = await self._revoke_family(family_id)
        logger.info("token.family_revoked", user_id=user_id, family_id=family_id, revoked=revoked)
        return Revocation(user_id=user_id, family_id=family_id, revoked=revoked)

    async def revoke_user(self, user_id: int) -> int:
        """Revoke every family a user holds (e.g. on deactivation)."""
        now = utcnow()
        await self.db.execute(
            update(RefreshTokenFamily)
            .where(RefreshTokenFamily.user_id == user_id, RefreshTokenFamily.revoked_at.is_(None))
            .values(revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(
            update(RefreshToken)
            .where(RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None))
            .values(revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        logger.info("token.user_revoked", user_id=user_id, revoked=result.rowcount)
        return result.rowcount

    async def family(self, family_id: str) -> list[RefreshToken]:
        result = await self.db.execute(
            select(RefreshToken)
            .where(RefreshToken.family_id == family_id)
            .order_by(RefreshToken.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    # ─── Internals ──────────────────────────────────────

    async def _lookup(self, token_hash: str) -> RefreshToken:
        result = await self.db.execute(
            select(RefreshToken)
            .where(RefreshToken.token_hash == token_hash)
            .execution_options(populate_existing=True)
        )
        token = result.scalars().first()
        if token is None:
            raise TokenNotFoundError("Refresh token not found")
        return token

    async def _insert_refresh(self, user_id: int, family_id: str) -> tuple[str, datetime]:
        raw = new_refresh_token()
        now = utcnow()
        expires_at = now + self.refresh_ttl
        self.db.add(
            RefreshToken(
                token_hash=hash_token(raw),
                user_id=user_id,
                family_id=family_id,
                issued_at=now,
                expires_at=expires_at,
            )
        )
        await self.db.flush()
        return raw, expires_at

    async def _claim_family(self, family_id: str, now: datetime) -> bool:
        result = await self.db.execute(
            update(RefreshTokenFamily)
            .where(RefreshTokenFamily.id == family_id, RefreshTokenFamily.revoked_at.is_(None))
            .values(rotated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _revoke_family(self, family_id: str) -> int:
        """Mark the family, then sweep its tokens. Returns tokens revoked."""
        now = utcnow()
        await self.db.execute(
            update(RefreshTokenFamily)
            .where(RefreshTokenFamily.id == family_id, RefreshTokenFamily.revoked_at.is_(None))
            .values(revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(
            update(RefreshToken)
            .where(RefreshToken.family_id == family_id, RefreshToken.revoked_at.is_(None))
            .values(revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount

    async def _reuse_detected(self, user_id: int, family_id: str, reason: str) -> NoReturn:
        revoked = await self._revoke_family(family_id)
        logger.warning(
            "token.reuse_detected",
            user_id=user_id,
            family_id=family_id,
            reason=reason,
            revoked=revoked,
        )
        raise ReuseDetectedError(
            "Refresh token was already used; session revoked",
            user_id=user_id,
            family_id=family_id,
        )

    async def _access_token_for(self, user: User) -> str:
        roles = await Authorizer(self.db).effective_permissions(user.id)
        return create_access_token(user.id, user.email, roles, expires_delta=self.access_ttl)
