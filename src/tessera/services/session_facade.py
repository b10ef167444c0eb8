"""Session facade — login, refresh, who-am-I, logout, admin assignments.

Learn: Every operation follows the same shape:

    1. do the work against the store (each component commits its own step)
    2. build the event(s) with a causation id derived from that work
    3. publish; only then report success

The store write and the publish are separate steps. If (3) fails the
mutation stays committed and the caller gets PublishFailedError, which
carries both the finished result and the unsent event so it can be
re-published later (same event id, consumers dedupe). Reuse detection is
the exception: ReuseDetectedError stands and carries the unsent event.
If the caller abandons the call between (1) and (3) the store is still
consistent; the event is simply late.

Causation ids make retries idempotent at the consumer:
- login         → the new refresh family id
- first login   → provider:subject (one user.created per identity)
- refresh       → hash of the consumed refresh token
- reuse         → hash of the replayed refresh token
- logout        → the family id
- assignments   → actor:target:timestamp of the mutation
"""

from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from tessera.auth.oauth import GoogleCredentialVerifier, LoginRedirect
from tessera.db.engine import store_guard
from tessera.db.models import User
from tessera.errors import PublishFailedError, ReuseDetectedError, UnavailableError
from tessera.events.publisher import Ack, DomainEvent, EventPublisher, build_event
from tessera.events.types import (
    ORGANIZATION_ASSIGNED,
    ORGANIZATION_REMOVED,
    ROLE_ASSIGNED,
    ROLE_REMOVED,
    TOKEN_REFRESHED,
    TOKEN_REUSE_DETECTED,
    USER_CREATED,
    USER_LOGGED_IN,
    USER_LOGGED_OUT,
)
from tessera.services.identity_service import IdentityResolver
from tessera.services.rbac_service import (
    ADMIN_ROLE,
    AccessAdmin,
    AssignmentChange,
    bootstrap_first_admin,
)
from tessera.services.token_service import TokenService, hash_token

logger = structlog.get_logger()


@dataclass(frozen=True)
class LoginResult:
    user: User
    access_token: str
    refresh_token: str
    expires_in: int
    created: bool = False
    token_type: str = "Bearer"


@dataclass(frozen=True)
class RefreshResult:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class SessionFacade:
    """The one entry point the HTTP layer (and CLI) talks to."""

    def __init__(
        self,
        db: AsyncSession,
        publisher: EventPublisher,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.db = db
        self.publisher = publisher
        self.verifier = GoogleCredentialVerifier(db, http)
        self.identities = IdentityResolver(db)
        self.tokens = TokenService(db)
        self.access = AccessAdmin(db)

    # ═══════════════════════════════════════════════════════════
    # Login / session lifecycle
    # ═══════════════════════════════════════════════════════════

    async def begin_login(self) -> LoginRedirect:
        async with store_guard():
            return await self.verifier.begin()

    async def complete_login(self, code: str, state: str) -> LoginResult:
        async with store_guard():
            identity = await self.verifier.exchange_code(code, state)
            resolution = await self.identities.resolve_or_create(identity)
            pair = await self.tokens.issue(resolution.user)

        user = resolution.user
        result = LoginResult(
            user=user,
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            created=resolution.created,
        )

        events = []
        if resolution.created:
            events.append(
                build_event(
                    USER_CREATED,
                    user.id,
                    f"{identity.provider}:{identity.subject}",
                    {"email": user.email, "name": user.name, "provider": identity.provider},
                )
            )
        events.append(
            build_event(
                USER_LOGGED_IN,
                user.id,
                pair.family_id,
                {"email": user.email, "family_id": pair.family_id},
            )
        )
        await self._publish_all(events, result)

        logger.info("session.login", user_id=user.id, created=resolution.created)
        return result

    async def refresh(self, refresh_token: str) -> RefreshResult:
        try:
            async with store_guard():
                rotation = await self.tokens.rotate(refresh_token)
        except ReuseDetectedError as exc:
            # The family is already revoked. A bus failure must not turn
            # the forced re-login into a retryable 503.
            event = build_event(
                TOKEN_REUSE_DETECTED,
                exc.user_id,
                hash_token(refresh_token),
                {"family_id": exc.family_id},
            )
            try:
                await self.publisher.publish(event)
            except UnavailableError as publish_exc:
                logger.error(
                    "session.reuse_event_unpublished",
                    event_id=str(event.event_id),
                    user_id=exc.user_id,
                    family_id=exc.family_id,
                    error=str(publish_exc),
                )
                exc.unpublished_event = event
            raise

        pair = rotation.pair
        result = RefreshResult(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        )
        event = build_event(
            TOKEN_REFRESHED,
            rotation.user_id,
            rotation.consumed_token_hash,
            {"family_id": rotation.family_id},
        )
        await self._publish_all([event], result)
        return result

    async def current_user(self, access_token: str) -> User:
        """Verify the access token (pure), then load the live user row."""
        claims = self.tokens.verify_access_token(access_token)
        async with store_guard():
            return await self.identities.get_user(claims.user_id)

    async def logout(self, refresh_token: str) -> Ack:
        """Revoke the token's family. Repeating it is harmless."""
        async with store_guard():
            revocation = await self.tokens.revoke_family(refresh_token)

        event = build_event(
            USER_LOGGED_OUT,
            revocation.user_id,
            revocation.family_id,
            {"family_id": revocation.family_id},
        )
        (ack,) = await self._publish_all([event], revocation)
        logger.info("session.logout", user_id=revocation.user_id)
        return ack

    # ═══════════════════════════════════════════════════════════
    # Admin assignments
    # ═══════════════════════════════════════════════════════════
    #
    # Each returns the Ack of the published event, or None when the call
    # was a no-op (already assigned / nothing to remove) and so emitted
    # nothing.

    async def assign_role(self, actor_id: int, user_id: int, role_id: int) -> Optional[Ack]:
        async with store_guard():
            change = await self.access.assign_role(actor_id, user_id, role_id)
        return await self._publish_change(
            ROLE_ASSIGNED, actor_id, change, {"role_id": role_id, "role": change.target_name}
        )

    async def remove_role(self, actor_id: int, user_id: int, role_id: int) -> Optional[Ack]:
        async with store_guard():
            change = await self.access.remove_role(actor_id, user_id, role_id)
        return await self._publish_change(
            ROLE_REMOVED, actor_id, change, {"role_id": role_id, "role": change.target_name}
        )

    async def assign_organization(
        self,
        actor_id: int,
        user_id: int,
        organization_id: int,
        label: str = "member",
    ) -> Optional[Ack]:
        async with store_guard():
            change = await self.access.assign_organization(
                actor_id, user_id, organization_id, label
            )
        return await self._publish_change(
            ORGANIZATION_ASSIGNED,
            actor_id,
            change,
            {
                "organization_id": organization_id,
                "organization": change.target_name,
                "label": label,
            },
        )

    async def remove_organization(
        self, actor_id: int, user_id: int, organization_id: int
    ) -> Optional[Ack]:
        async with store_guard():
            change = await self.access.remove_organization(actor_id, user_id, organization_id)
        return await self._publish_change(
            ORGANIZATION_REMOVED,
            actor_id,
            change,
            {"organization_id": organization_id, "organization": change.target_name},
        )

    async def bootstrap_first_admin(self) -> User:
        """Promote the earliest user to admin when nobody holds it."""
        async with store_guard():
            user = await bootstrap_first_admin(self.db)

        event = build_event(
            ROLE_ASSIGNED,
            user.id,
            f"bootstrap:{user.id}",
            {"role": ADMIN_ROLE, "actor_id": user.id, "bootstrap": True},
        )
        await self._publish_all([event], user)
        return user

    # ─── Internals ──────────────────────────────────────

    async def _publish_change(
        self,
        event_type: str,
        actor_id: int,
        change: AssignmentChange,
        payload: dict[str, Any],
    ) -> Optional[Ack]:
        if not change.changed:
            return None
        event = build_event(
            event_type,
            change.user_id,
            f"{actor_id}:{change.target_id}:{change.at.isoformat()}",
            {**payload, "actor_id": actor_id},
        )
        (ack,) = await self._publish_all([event], change)
        return ack

    async def _publish_all(self, events: list[DomainEvent], result: Any) -> list[Ack]:
        acks = []
        for event in events:
            try:
                acks.append(await self.publisher.publish(event))
            except UnavailableError as exc:
                logger.error(
                    "session.publish_failed",
                    event_id=str(event.event_id),
                    event_type=event.type,
                    error=str(exc),
                )
                raise PublishFailedError(
                    f"State committed but event {event.type} was not published: {exc.message}",
                    event=event,
                    result=result,
                ) from exc
        return acks
