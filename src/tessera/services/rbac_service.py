"""RBAC service — flat role model, organization scoping, gated assignments.

Learn: Roles form a SET, not a tree. A user's effective permissions are
exactly the union of the role names attached through user_roles; holding
`admin` does not imply `manager` unless both are assigned. No inheritance
chains means nothing to reason about beyond set membership.

Organization membership is a separate axis: an org-scoped operation needs
the actor to be a member of that org, or to hold global `admin` (bypass).

No caching: every check reads the store, so an assignment is visible
to the very next authorize() call.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tessera.db.models import (
    Organization,
    Role,
    User,
    UserOrganization,
    UserRole,
    utcnow,
)
from tessera.errors import ConflictError, ForbiddenError, NotFoundError

logger = structlog.get_logger()

ADMIN_ROLE = "admin"

# Seed set — installed once, re-running is a no-op
DEFAULT_ROLES: list[tuple[str, str]] = [
    ("admin", "Global administrator with full system access"),
    ("manager", "Manager with organization-level access"),
    ("editor", "Editor with content modification access"),
    ("reader", "Read-only access to content"),
]


class Decision(enum.Enum):
    ALLOWED = "allowed"
    DENIED = "denied"

    @property
    def allowed(self) -> bool:
        return self is Decision.ALLOWED


@dataclass(frozen=True)
class AssignmentChange:
    """Outcome of an assign/remove call. changed=False means no-op."""

    user_id: int
    target_id: int
    target_name: str
    changed: bool
    at: datetime
    label: Optional[str] = None


# ═══════════════════════════════════════════════════════════
# Authorizer — read side
# ═══════════════════════════════════════════════════════════


class Authorizer:
    """Answers permission questions from the current store state."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def effective_permissions(self, user_id: int) -> frozenset[str]:
        result = await self.db.execute(
            select(Role.name)
            .join(UserRole, UserRole.role_id == Role.id)
            .where(UserRole.user_id == user_id)
        )
        return frozenset(result.scalars().all())

    async def authorize(self, user_id: int, required_role: str) -> Decision:
        roles = await self.effective_permissions(user_id)
        return Decision.ALLOWED if required_role in roles else Decision.DENIED

    async def authorize_organization(
        self, user_id: int, organization_id: int
    ) -> Decision:
        """Member of the organization, or global admin."""
        membership = await self.db.get(UserOrganization, (user_id, organization_id))
        if membership is not None:
            return Decision.ALLOWED
        return await self.authorize(user_id, ADMIN_ROLE)

    async def require(self, user_id: int, required_role: str) -> None:
        decision = await self.authorize(user_id, required_role)
        if not decision.allowed:
            logger.warning("rbac.denied", user_id=user_id, required_role=required_role)
            raise ForbiddenError(f"Role '{required_role}' required")

    async def require_organization(self, user_id: int, organization_id: int) -> None:
        decision = await self.authorize_organization(user_id, organization_id)
        if not decision.allowed:
            logger.warning(
                "rbac.denied_organization",
                user_id=user_id,
                organization_id=organization_id,
            )
            raise ForbiddenError("Not a member of this organization")


# ═══════════════════════════════════════════════════════════
# AccessAdmin — admin-gated mutations
# ═══════════════════════════════════════════════════════════


class AccessAdmin:
    """Assign/remove roles and memberships. Every call requires `admin`.

    Duplicate policy: assignments are idempotent. Re-assigning a held
    role (or an unchanged membership) and removing something absent are
    no-ops reported as changed=False; callers publish events only for
    real changes.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.authorizer = Authorizer(db)

    # ─── Roles ──────────────────────────────────────────

    async def assign_role(
        self, actor_id: int, user_id: int, role_id: int
    ) -> AssignmentChange:
        await self.authorizer.require(actor_id, ADMIN_ROLE)
        await self._user(user_id)
        role_name = (await self._role(role_id)).name

        now = utcnow()
        if await self.db.get(UserRole, (user_id, role_id)) is not None:
            return AssignmentChange(user_id, role_id, role_name, changed=False, at=now)

        self.db.add(
            UserRole(user_id=user_id, role_id=role_id, assigned_at=now, assigned_by=actor_id)
        )
        try:
            await self.db.commit()
        except IntegrityError:
            # Concurrent duplicate assignment won; same end state
            await self.db.rollback()
            return AssignmentChange(user_id, role_id, role_name, changed=False, at=now)

        logger.info("rbac.role_assigned", actor_id=actor_id, user_id=user_id, role=role_name)
        return AssignmentChange(user_id, role_id, role_name, changed=True, at=now)

    async def remove_role(
        self, actor_id: int, user_id: int, role_id: int
    ) -> AssignmentChange:
        await self.authorizer.require(actor_id, ADMIN_ROLE)
        await self._user(user_id)
        role = await self._role(role_id)

        now = utcnow()
        result = await self.db.execute(
            delete(UserRole).where(
                UserRole.user_id == user_id, UserRole.role_id == role_id
            )
        )
        await self.db.commit()
        changed = result.rowcount > 0
        if changed:
            logger.info("rbac.role_removed", actor_id=actor_id, user_id=user_id, role=role.name)
        return AssignmentChange(user_id, role_id, role.name, changed=changed, at=now)

    # ─── Organizations ──────────────────────────────────

    async def assign_organization(
        self,
        actor_id: int,
        user_id: int,
        organization_id: int,
        label: str = "member",
    ) -> AssignmentChange:
        await self.authorizer.require(actor_id, ADMIN_ROLE)
        await self._user(user_id)
        org_name = (await self._organization(organization_id)).name

        now = utcnow()
        membership = await self.db.get(UserOrganization, (user_id, organization_id))
        if membership is not None:
            if membership.role == label:
                return AssignmentChange(
                    user_id, organization_id, org_name, changed=False, at=now, label=label
                )
            membership.role = label
            await self.db.commit()
            logger.info(
                "rbac.membership_relabelled",
                actor_id=actor_id,
                user_id=user_id,
                organization_id=organization_id,
                label=label,
            )
            return AssignmentChange(
                user_id, organization_id, org_name, changed=True, at=now, label=label
            )

        self.db.add(
            UserOrganization(
                user_id=user_id, organization_id=organization_id, role=label, joined_at=now
            )
        )
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            return AssignmentChange(
                user_id, organization_id, org_name, changed=False, at=now, label=label
            )

        logger.info(
            "rbac.membership_added",
            actor_id=actor_id,
            user_id=user_id,
            organization_id=organization_id,
        )
        return AssignmentChange(
            user_id, organization_id, org_name, changed=True, at=now, label=label
        )

    async def remove_organization(
        self, actor_id: int, user_id: int, organization_id: int
    ) -> AssignmentChange:
        await self.authorizer.require(actor_id, ADMIN_ROLE)
        await self._user(user_id)
        org = await self._organization(organization_id)

        now = utcnow()
        result = await self.db.execute(
            delete(UserOrganization).where(
                UserOrganization.user_id == user_id,
                UserOrganization.organization_id == organization_id,
            )
        )
        await self.db.commit()
        changed = result.rowcount > 0
        if changed:
            logger.info(
                "rbac.membership_removed",
                actor_id=actor_id,
                user_id=user_id,
                organization_id=organization_id,
            )
        return AssignmentChange(user_id, organization_id, org.name, changed=changed, at=now)

    # ─── Lookups ────────────────────────────────────────

    async def _user(self, user_id: int) -> User:
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def _role(self, role_id: int) -> Role:
        role = await self.db.get(Role, role_id)
        if role is None:
            raise NotFoundError("Role not found")
        return role

    async def _organization(self, organization_id: int) -> Organization:
        org = await self.db.get(Organization, organization_id)
        if org is None:
            raise NotFoundError("Organization not found")
        return org


# ═══════════════════════════════════════════════════════════
# One-time setup
# ═══════════════════════════════════════════════════════════


async def seed_default_roles(db: AsyncSession) -> list[str]:
    """Insert any missing default roles. Returns the names created."""
    result = await db.execute(select(Role.name))
    existing = set(result.scalars().all())

    created = []
    for name, description in DEFAULT_ROLES:
        if name in existing:
            continue
        db.add(Role(name=name, description=description))
        try:
            await db.commit()
        except IntegrityError:
            # Another instance seeded it first
            await db.rollback()
            continue
        created.append(name)

    if created:
        logger.info("rbac.roles_seeded", roles=created)
    return created


async def bootstrap_first_admin(db: AsyncSession) -> User:
    """Give `admin` to the earliest user, if nobody holds it yet."""
    admin_role = (
        await db.execute(select(Role).where(Role.name == ADMIN_ROLE))
    ).scalars().first()
    if admin_role is None:
        raise NotFoundError("Admin role not found; seed roles first")

    admin_count = (
        await db.execute(
            select(func.count()).select_from(UserRole).where(UserRole.role_id == admin_role.id)
        )
    ).scalar_one()
    if admin_count:
        raise ConflictError("Admin user already exists")

    first_user = (
        await db.execute(select(User).order_by(User.created_at, User.id).limit(1))
    ).scalars().first()
    if first_user is None:
        raise NotFoundError("No users found in system")

    # Self-assigned: there is no admin yet to act
    db.add(
        UserRole(
            user_id=first_user.id,
            role_id=admin_role.id,
            assigned_at=utcnow(),
            assigned_by=first_user.id,
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent bootstrap promoted the same user first
        await db.rollback()
        raise ConflictError("Admin user already exists")
    logger.info("rbac.first_admin_bootstrapped", user_id=first_user.id)
    return first_user
