"""Token service tests — issue, rotate, reuse detection, stateless access tokens.

Learn: Tests cover:
1. Issue → one family, one active refresh token, verifiable access token
2. Rotation → old token used, successor active, never two active
3. Replay of a used token → ReuseDetected, whole family revoked
4. Concurrent refresh with the same token → exactly one winner
5. Expiry, unknown tokens, logout idempotency
6. Access tokens verify without the store
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from sqlalchemy import delete, select, update

from tessera.auth.jwt import create_access_token, verify_access_token
from tessera.config import settings
from tessera.db.models import RefreshToken, RefreshTokenFamily, Role, User, utcnow
from tessera.errors import (
    ReuseDetectedError,
    TokenExpiredError,
    TokenInvalidError,
    TokenNotFoundError,
)
from tessera.services.rbac_service import AccessAdmin, Authorizer
from tessera.services.token_service import REFRESH_TOKEN_PREFIX, TokenService, hash_token


def _active(tokens: list[RefreshToken]) -> list[RefreshToken]:
    return [t for t in tokens if t.state == "active"]


# ═══════════════════════════════════════════════════════════
# Issue
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_issue_creates_family_with_one_active_token(db_session, make_user):
    """A login starts a new family holding exactly one active token."""
    user = await make_user(roles=("reader",))
    tokens = TokenService(db_session)

    pair = await tokens.issue(user)

    assert pair.refresh_token.startswith(REFRESH_TOKEN_PREFIX)
    assert pair.expires_in == settings.access_token_expire_minutes * 60
    family = await tokens.family(pair.family_id)
    assert len(family) == 1
    assert family[0].state == "active"
    # Only the hash is stored
    assert family[0].token_hash == hash_token(pair.refresh_token)
    assert family[0].token_hash != pair.refresh_token


@pytest.mark.asyncio
async def test_access_token_carries_role_snapshot(db_session, make_user):
    """The access token names the user and their roles at issue time."""
    user = await make_user(roles=("editor", "reader"))

    pair = await TokenService(db_session).issue(user)
    claims = verify_access_token(pair.access_token)

    assert claims.user_id == user.id
    assert claims.email == user.email
    assert claims.roles == frozenset({"editor", "reader"})
    assert claims.expires_at > claims.issued_at


@pytest.mark.asyncio
async def test_each_login_gets_its_own_family(db_session, make_user):
    user = await make_user()
    tokens = TokenService(db_session)

    first = await tokens.issue(user)
    second = await tokens.issue(user)

    assert first.family_id != second.family_id
    assert first.refresh_token != second.refresh_token


# ═══════════════════════════════════════════════════════════
# Rotation
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_rotate_marks_old_used_and_issues_successor(db_session, make_user):
    """Refresh consumes the token and leaves exactly one active successor."""
    user = await make_user()
    tokens = TokenService(db_session)
    pair = await tokens.issue(user)

    rotation = await tokens.rotate(pair.refresh_token)

    assert rotation.user_id == user.id
    assert rotation.family_id == pair.family_id
    assert rotation.pair.refresh_token != pair.refresh_token
    assert rotation.consumed_token_hash == hash_token(pair.refresh_token)
    assert verify_access_token(rotation.pair.access_token).user_id == user.id

    family = await tokens.family(pair.family_id)
    assert [t.state for t in family] == ["used", "active"]
    assert family[1].token_hash == hash_token(rotation.pair.refresh_token)


@pytest.mark.asyncio
async def test_rotation_chain_keeps_one_active_token(db_session, make_user):
    user = await make_user()
    tokens = TokenService(db_session)
    pair = await tokens.issue(user)
    current = pair.refresh_token

    for _ in range(4):
        current = (await tokens.rotate(current)).pair.refresh_token

    family = await tokens.family(pair.family_id)
    assert len(family) == 5
    assert len(_active(family)) == 1
    assert family[-1].token_hash == hash_token(current)


@pytest.mark.asyncio
async def test_rotation_picks_up_new_roles(db_session, make_user):
    """A refreshed access token reflects the roles held *now*."""
    admin = await make_user(roles=("admin",))
    user = await make_user()
    tokens = TokenService(db_session)
    pair = await tokens.issue(user)
    assert verify_access_token(pair.access_token).roles == frozenset()

    manager = (await db_session.execute(select(Role).where(Role.name == "manager"))).scalar_one()
    await AccessAdmin(db_session).assign_role(admin.id, user.id, manager.id)
    rotation = await tokens.rotate(pair.refresh_token)

    assert verify_access_token(rotation.pair.access_token).roles == frozenset({"manager"})
    assert await Authorizer(db_session).effective_permissions(user.id) == frozenset({"manager"})


# ═══════════════════════════════════════════════════════════
# Reuse detection
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_replaying_used_token_revokes_whole_family(db_session, make_user):
    """Replay of a rotated token → ReuseDetected, successor revoked too."""
    user = await make_user()
    tokens = TokenService(db_session)
    original = await tokens.issue(user)
    rotated = await tokens.rotate(original.refresh_token)

    with pytest.raises(ReuseDetectedError) as exc_info:
        await tokens.rotate(original.refresh_token)

    assert exc_info.value.user_id == user.id
    assert exc_info.value.family_id == original.family_id
    family = await tokens.family(original.family_id)
    assert all(t.state == "revoked" for t in family)

    # The successor was never presented, and is dead all the same
    with pytest.raises(ReuseDetectedError):
        await tokens.rotate(rotated.pair.refresh_token)


@pytest.mark.asyncio
async def test_reuse_does_not_touch_other_families(db_session, make_user):
    user = await make_user()
    tokens = TokenService(db_session)
    laptop = await tokens.issue(user)
    phone = await tokens.issue(user)
    await tokens.rotate(laptop.refresh_token)

    with pytest.raises(ReuseDetectedError):
        await tokens.rotate(laptop.refresh_token)

    rotation = await tokens.rotate(phone.refresh_token)
    assert rotation.family_id == phone.family_id


@pytest.mark.asyncio
async def test_concurrent_refresh_has_exactly_one_winner(session_factory, db_session, make_user):
    """Two refreshes racing on one token: one rotates, the other is reuse."""
    user = await make_user()
    pair = await TokenService(db_session).issue(user)

    async def attempt():
        async with session_factory() as session:
            return await TokenService(session).rotate(pair.refresh_token)

    results = await asyncio.gather(attempt(), attempt(), return_exceptions=True)

    winners = [r for r in results if not isinstance(r, BaseException)]
    losers = [r for r in results if isinstance(r, BaseException)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], ReuseDetectedError)

    # The loser's reuse signal revoked the family; nothing is left active
    family = await TokenService(db_session).family(pair.family_id)
    assert len(_active(family)) == 0


@pytest.mark.asyncio
async def test_concurrent_refresh_stress_never_two_active(session_factory, db_session, make_user):
    """Many racing refreshes: at most one success, never two active tokens."""
    user = await make_user()
    pair = await TokenService(db_session).issue(user)

    async def attempt():
        async with session_factory() as session:
            return await TokenService(session).rotate(pair.refresh_token)

    results = await asyncio.gather(*(attempt() for _ in range(6)), return_exceptions=True)

    successes = [r for r in results if not isinstance(r, BaseException)]
    assert len(successes) <= 1
    assert all(
        isinstance(r, ReuseDetectedError) for r in results if isinstance(r, BaseException)
    )
    family = await TokenService(db_session).family(pair.family_id)
    assert len(_active(family)) <= 1


# ═══════════════════════════════════════════════════════════
# Revocation racing rotation
# ═══════════════════════════════════════════════════════════


async def _family_row(db, family_id: str) -> RefreshTokenFamily:
    result = await db.execute(
        select(RefreshTokenFamily)
        .where(RefreshTokenFamily.id == family_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


class RevokeBeforeClaim(TokenService):
    """Runs a revocation from another session after rotate() read the token."""

    def __init__(self, db, revoke):
        super().__init__(db)
        self._revoke = revoke

    async def _claim_family(self, family_id, now):
        await self._revoke()
        return await super()._claim_family(family_id, now)


@pytest.mark.asyncio
async def test_issue_records_an_open_family(db_session, make_user):
    user = await make_user()

    pair = await TokenService(db_session).issue(user)

    family = await _family_row(db_session, pair.family_id)
    assert family.user_id == user.id
    assert family.revoked_at is None


@pytest.mark.asyncio
async def test_logout_landing_mid_rotation_leaves_nothing_active(
    session_factory, db_session, make_user
):
    """Logout commits between the refresh's read and its claim: no successor."""
    user = await make_user()
    pair = await TokenService(db_session).issue(user)

    async def logout():
        async with session_factory() as other:
            await TokenService(other).revoke_family(pair.refresh_token)

    with pytest.raises(ReuseDetectedError):
        await RevokeBeforeClaim(db_session, logout).rotate(pair.refresh_token)

    family = await TokenService(db_session).family(pair.family_id)
    assert [t.state for t in family] == ["revoked"]
    assert (await _family_row(db_session, pair.family_id)).revoked_at is not None


@pytest.mark.asyncio
async def test_replay_landing_mid_rotation_leaves_nothing_active(
    session_factory, db_session, make_user
):
    """A thief replays an old token while the real client refreshes the current one."""
    user = await make_user()
    tokens = TokenService(db_session)
    original = await tokens.issue(user)
    current = (await tokens.rotate(original.refresh_token)).pair.refresh_token

    async def replay():
        async with session_factory() as other:
            with pytest.raises(ReuseDetectedError):
                await TokenService(other).rotate(original.refresh_token)

    with pytest.raises(ReuseDetectedError):
        await RevokeBeforeClaim(db_session, replay).rotate(current)

    family = await tokens.family(original.family_id)
    assert len(family) == 2
    assert _active(family) == []


@pytest.mark.asyncio
async def test_revoked_family_refuses_rotation_of_unswept_token(db_session, make_user):
    """The family mark alone is enough: a token the sweep has not reached yet is dead."""
    user = await make_user()
    tokens = TokenService(db_session)
    pair = await tokens.issue(user)
    await db_session.execute(
        update(RefreshTokenFamily)
        .where(RefreshTokenFamily.id == pair.family_id)
        .values(revoked_at=utcnow())
    )
    await db_session.commit()

    with pytest.raises(ReuseDetectedError):
        await tokens.rotate(pair.refresh_token)

    family = await tokens.family(pair.family_id)
    assert len(family) == 1
    assert _active(family) == []


@pytest.mark.asyncio
async def test_logout_with_older_token_sweeps_successor(db_session, make_user):
    user = await make_user()
    tokens = TokenService(db_session)
    original = await tokens.issue(user)
    rotated = await tokens.rotate(original.refresh_token)

    revocation = await tokens.revoke_family(original.refresh_token)

    assert revocation.revoked == 2
    assert _active(await tokens.family(original.family_id)) == []
    with pytest.raises(ReuseDetectedError):
        await tokens.rotate(rotated.pair.refresh_token)


# ═══════════════════════════════════════════════════════════
# Expiry / unknown / logout
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_expired_refresh_token_is_rejected(db_session, make_user):
    user = await make_user()
    tokens = TokenService(db_session, refresh_ttl=timedelta(seconds=-1))
    pair = await tokens.issue(user)

    with pytest.raises(TokenExpiredError):
        await tokens.rotate(pair.refresh_token)

    # Expiry is not reuse: the family is left alone
    family = await tokens.family(pair.family_id)
    assert [t.state for t in family] == ["active"]


@pytest.mark.asyncio
async def test_unknown_refresh_token_is_not_found(db_session):
    with pytest.raises(TokenNotFoundError):
        await TokenService(db_session).rotate(f"{REFRESH_TOKEN_PREFIX}{uuid.uuid4().hex}")


@pytest.mark.asyncio
async def test_revoke_family_is_idempotent(db_session, make_user):
    user = await make_user()
    tokens = TokenService(db_session)
    pair = await tokens.issue(user)

    first = await tokens.revoke_family(pair.refresh_token)
    second = await tokens.revoke_family(pair.refresh_token)

    assert first.revoked == 1
    assert second.revoked == 0
    assert first.family_id == second.family_id == pair.family_id


@pytest.mark.asyncio
async def test_refresh_after_logout_is_reuse(db_session, make_user):
    """A revoked token presented again is treated as a replay."""
    user = await make_user()
    tokens = TokenService(db_session)
    pair = await tokens.issue(user)
    await tokens.revoke_family(pair.refresh_token)

    with pytest.raises(ReuseDetectedError):
        await tokens.rotate(pair.refresh_token)


@pytest.mark.asyncio
async def test_revoke_user_kills_every_family(db_session, make_user):
    user = await make_user()
    other = await make_user()
    tokens = TokenService(db_session)
    a = await tokens.issue(user)
    b = await tokens.issue(user)
    keep = await tokens.issue(other)

    revoked = await tokens.revoke_user(user.id)

    assert revoked == 2
    for pair in (a, b):
        with pytest.raises(ReuseDetectedError):
            await tokens.rotate(pair.refresh_token)
    assert (await tokens.rotate(keep.refresh_token)).user_id == other.id


# ═══════════════════════════════════════════════════════════
# Access tokens — stateless
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_access_token_verifies_without_store(db_session, make_user):
    """Verification is pure: deleting the user does not affect it."""
    user = await make_user()
    token = create_access_token(user.id, user.email, ["reader"])

    await db_session.execute(delete(RefreshToken))
    await db_session.execute(delete(RefreshTokenFamily))
    await db_session.execute(delete(User).where(User.id == user.id))
    await db_session.commit()

    claims = TokenService.verify_access_token(token)
    assert claims.user_id == user.id
    assert claims.roles == frozenset({"reader"})


def test_expired_access_token_fails_with_expired():
    token = create_access_token(7, "a@example.com", [], expires_delta=timedelta(seconds=-1))
    with pytest.raises(TokenExpiredError):
        verify_access_token(token)


def test_access_token_signed_with_other_secret_is_invalid():
    now = datetime.now(timezone.utc)
    token = jwt.encode(
        {
            "sub": "7",
            "type": "access",
            "iss": settings.jwt_issuer,
            "iat": now,
            "exp": now + timedelta(minutes=5),
        },
        "not-the-server-secret-but-long-enough-for-hs256",
        algorithm="HS256",
    )
    with pytest.raises(TokenInvalidError):
        verify_access_token(token)


def test_non_access_token_type_is_invalid():
    now = datetime.now(timezone.utc)
    token = jwt.encode(
        {
            "sub": "7",
            "type": "refresh",
            "iss": settings.jwt_issuer,
            "iat": now,
            "exp": now + timedelta(minutes=5),
        },
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )
    with pytest.raises(TokenInvalidError):
        verify_access_token(token)


def test_garbage_access_token_is_invalid():
    with pytest.raises(TokenInvalidError):
        verify_access_token("not-a-jwt")
