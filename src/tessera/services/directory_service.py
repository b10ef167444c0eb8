"""Directory service — roles, organizations, and who holds what.

Learn: Plain CRUD over the directory tables. Uniqueness is enforced by
the database (UNIQUE on name); the service turns the IntegrityError into
a ConflictError instead of racing a pre-check.

Deletion rules:
- A role still held by anyone cannot be deleted (ConflictError).
- Deleting an organization removes its memberships with it.
"""

from typing import Any, Optional

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tessera.db.models import Organization, Role, User, UserOrganization, UserRole
from tessera.errors import ConflictError, NotFoundError

logger = structlog.get_logger()


class DirectoryService:
    """Business logic for the role/organization directory."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ─── Roles ──────────────────────────────────────────

    async def list_roles(self) -> list[Role]:
        result = await self.db.execute(select(Role).order_by(Role.name))
        return list(result.scalars().all())

    async def get_role(self, role_id: int) -> Role:
        role = await self.db.get(Role, role_id)
        if role is None:
            raise NotFoundError("Role not found")
        return role

    async def create_role(self, name: str, description: str = "") -> Role:
        role = Role(name=name, description=description)
        self.db.add(role)
        await self._commit(f"Role '{name}' already exists")
        await self.db.refresh(role)
        logger.info("directory.role_created", role_id=role.id, name=name)
        return role

    async def update_role(
        self,
        role_id: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Role:
        """Rename/re-describe. Assignments follow the id, not the name."""
        role = await self.get_role(role_id)
        if name is not None:
            role.name = name
        if description is not None:
            role.description = description
        await self._commit(f"Role '{name}' already exists")
        await self.db.refresh(role)
        return role

    async def delete_role(self, role_id: int) -> None:
        role = await self.get_role(role_id)
        name = role.name
        holders = (
            await self.db.execute(
                select(func.count()).select_from(UserRole).where(UserRole.role_id == role_id)
            )
        ).scalar_one()
        if holders:
            raise ConflictError(
                f"Role '{name}' is assigned to {holders} user(s); remove the assignments first"
            )

        await self.db.delete(role)
        # A concurrent assignment between the count and here trips the FK
        await self._commit(f"Role '{name}' is still assigned")
        logger.info("directory.role_deleted", role_id=role_id)

    # ─── Organizations ──────────────────────────────────

    async def list_organizations(self) -> list[Organization]:
        result = await self.db.execute(select(Organization).order_by(Organization.name))
        return list(result.scalars().all())

    async def get_organization(self, organization_id: int) -> Organization:
        org = await self.db.get(Organization, organization_id)
        if org is None:
            raise NotFoundError("Organization not found")
        return org

    async def create_organization(
        self,
        name: str,
        description: str = "",
        metadata: Optional[dict[str, Any]] = None,
    ) -> Organization:
        org = Organization(name=name, description=description, meta=metadata or {})
        self.db.add(org)
        await self._commit(f"Organization '{name}' already exists")
        await self.db.refresh(org)
        logger.info("directory.organization_created", organization_id=org.id, name=name)
        return org

    async def update_organization(
        self,
        organization_id: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Organization:
        org = await self.get_organization(organization_id)
        if name is not None:
            org.name = name
        if description is not None:
            org.description = description
        if metadata is not None:
            org.meta = metadata
        await self._commit(f"Organization '{name}' already exists")
        await self.db.refresh(org)
        return org

    async def delete_organization(self, organization_id: int) -> int:
        """Delete the organization and its memberships. Returns memberships removed."""
        org = await self.get_organization(organization_id)
        # Explicit: SQLite only honours ON DELETE CASCADE with foreign_keys=ON
        result = await self.db.execute(
            delete(UserOrganization).where(
                UserOrganization.organization_id == organization_id
            )
        )
        await self.db.delete(org)
        await self.db.commit()
        logger.info(
            "directory.organization_deleted",
            organization_id=organization_id,
            memberships_removed=result.rowcount,
        )
        return result.rowcount

    # ─── Users ──────────────────────────────────────────

    async def list_users(self) -> list[User]:
        result = await self.db.execute(select(User).order_by(User.id))
        return list(result.scalars().all())

    async def get_user(self, user_id: int) -> User:
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def user_roles(self, user_id: int) -> list[Role]:
        await self.get_user(user_id)
        result = await self.db.execute(
            select(Role)
            .join(UserRole, UserRole.role_id == Role.id)
            .where(UserRole.user_id == user_id)
            .order_by(Role.name)
        )
        return list(result.scalars().all())

    async def user_organizations(
        self, user_id: int
    ) -> list[tuple[Organization, UserOrganization]]:
        """Memberships with their label and join time."""
        await self.get_user(user_id)
        result = await self.db.execute(
            select(Organization, UserOrganization)
            .join(UserOrganization, UserOrganization.organization_id == Organization.id)
            .where(UserOrganization.user_id == user_id)
            .order_by(Organization.name)
        )
        return [(org, membership) for org, membership in result.all()]

    # ─── Internals ──────────────────────────────────────

    async def _commit(self, conflict_message: str) -> None:
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            raise ConflictError(conflict_message) from exc
