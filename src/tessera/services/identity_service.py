"""Identity resolver — external identity → internal User.

Learn: This is the ONLY write path that creates users. Two browsers
finishing their first Google login at the same moment must end up with
one row, so creation is "insert, and if the unique constraint fires,
roll back and fetch what the winner inserted". The database constraint
is the arbiter, not an in-process lock.

Email is a secondary unique key. If a *different* external identity
already owns the email we refuse with EmailConflictError rather than
silently merging accounts.
"""

from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tessera.auth.oauth import ExternalIdentity
from tessera.db.models import User, utcnow
from tessera.errors import EmailConflictError, NotFoundError

logger = structlog.get_logger()


@dataclass(frozen=True)
class Resolution:
    user: User
    created: bool


class IdentityResolver:
    """Maps verified identities onto User rows, creating on first login."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def resolve_or_create(self, identity: ExternalIdentity) -> Resolution:
        user = await self.get_by_identity(identity.provider, identity.subject)
        if user is not None:
            return Resolution(user=await self._touch(user, identity), created=False)

        owner = await self.get_by_email(identity.email)
        if owner is not None:
            raise self._email_conflict(identity)

        user = User(
            provider=identity.provider,
            subject=identity.subject,
            email=identity.email,
            name=identity.name,
            picture=identity.picture,
            is_active=True,
            last_login_at=utcnow(),
        )
        self.db.add(user)
        try:
            await self.db.commit()
        except IntegrityError:
            # Lost the first-login race (or the email was taken meanwhile)
            await self.db.rollback()
            existing = await self.get_by_identity(identity.provider, identity.subject)
            if existing is None:
                raise self._email_conflict(identity)
            logger.info(
                "identity.first_login_race",
                user_id=existing.id,
                provider=identity.provider,
            )
            return Resolution(user=await self._touch(existing, identity), created=False)

        await self.db.refresh(user)
        logger.info("identity.user_created", user_id=user.id, provider=identity.provider)
        return Resolution(user=user, created=True)

    async def get_by_identity(self, provider: str, subject: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.provider == provider, User.subject == subject)
        )
        return result.scalars().first()

    async def get_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.email == email))
        return result.scalars().first()

    async def get_user(self, user_id: int) -> User:
        """Active user by id, or NotFoundError."""
        user = await self.db.get(User, user_id)
        if user is None or not user.is_active:
            raise NotFoundError("User not found")
        return user

    async def _touch(self, user: User, identity: ExternalIdentity) -> User:
        """Record the login and pick up profile changes from the provider."""
        if not user.is_active:
            raise NotFoundError("User is deactivated")
        user.last_login_at = utcnow()
        if identity.name and user.name != identity.name:
            user.name = identity.name
        if identity.picture and user.picture != identity.picture:
            user.picture = identity.picture
        await self.db.commit()
        await self.db.refresh(user)
        return user

    def _email_conflict(self, identity: ExternalIdentity) -> EmailConflictError:
        logger.warning(
            "identity.email_conflict",
            provider=identity.provider,
            subject=identity.subject,
        )
        return EmailConflictError(
            f"Email {identity.email} is already linked to another account"
        )
