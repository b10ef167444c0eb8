"""Admin API — who holds which roles and memberships, and changing that.

Learn: Assignment routes pass the caller's user id to the facade as the
actor; the admin check happens inside AccessAdmin against live store
state, so a non-admin gets 403 and nothing is written or published.
Repeating an assignment is a no-op: 200 with changed=false.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tessera.api.deps import get_session_facade
from tessera.auth.dependencies import CurrentIdentity, get_current_user, require_admin
from tessera.db.engine import get_db
from tessera.events.publisher import Ack
from tessera.schemas.auth import UserRead
from tessera.schemas.directory import (
    AssignmentResponse,
    AssignOrganizationRequest,
    MembershipRead,
    OrganizationRead,
    RoleRead,
    UserWithAccess,
)
from tessera.services.directory_service import DirectoryService
from tessera.services.session_facade import SessionFacade

router = APIRouter(prefix="/admin")

_admin = [Depends(require_admin)]


def _assignment(ack: Optional[Ack]) -> AssignmentResponse:
    if ack is None:
        return AssignmentResponse(changed=False)
    return AssignmentResponse(changed=True, event_id=str(ack.event_id))


async def _memberships(directory: DirectoryService, user_id: int) -> list[MembershipRead]:
    return [
        MembershipRead(
            organization=OrganizationRead.model_validate(org),
            role=membership.role,
            joined_at=membership.joined_at,
        )
        for org, membership in await directory.user_organizations(user_id)
    ]


# ─── Listings ───────────────────────────────────────────


@router.get("/users", response_model=list[UserWithAccess], dependencies=_admin)
async def list_users(db: AsyncSession = Depends(get_db)):
    """All users with their roles and organization memberships."""
    directory = DirectoryService(db)
    users = []
    for user in await directory.list_users():
        users.append(
            UserWithAccess(
                **UserRead.model_validate(user).model_dump(),
                roles=[RoleRead.model_validate(r) for r in await directory.user_roles(user.id)],
                organizations=await _memberships(directory, user.id),
            )
        )
    return users


@router.get("/users/{user_id}/roles", response_model=list[RoleRead], dependencies=_admin)
async def user_roles(user_id: int, db: AsyncSession = Depends(get_db)):
    return await DirectoryService(db).user_roles(user_id)


@router.get(
    "/users/{user_id}/organizations",
    response_model=list[MembershipRead],
    dependencies=_admin,
)
async def user_organizations(user_id: int, db: AsyncSession = Depends(get_db)):
    return await _memberships(DirectoryService(db), user_id)


# ─── Role assignments ───────────────────────────────────


@router.post("/users/{user_id}/roles/{role_id}", response_model=AssignmentResponse)
async def assign_role(
    user_id: int,
    role_id: int,
    identity: CurrentIdentity = Depends(get_current_user),
    facade: SessionFacade = Depends(get_session_facade),
):
    return _assignment(await facade.assign_role(identity.user_id, user_id, role_id))


@router.delete("/users/{user_id}/roles/{role_id}", response_model=AssignmentResponse)
async def remove_role(
    user_id: int,
    role_id: int,
    identity: CurrentIdentity = Depends(get_current_user),
    facade: SessionFacade = Depends(get_session_facade),
):
    return _assignment(await facade.remove_role(identity.user_id, user_id, role_id))


# ─── Organization memberships ───────────────────────────


@router.post(
    "/users/{user_id}/organizations/{organization_id}",
    response_model=AssignmentResponse,
)
async def assign_organization(
    user_id: int,
    organization_id: int,
    body: Optional[AssignOrganizationRequest] = None,
    identity: CurrentIdentity = Depends(get_current_user),
    facade: SessionFacade = Depends(get_session_facade),
):
    label = body.role if body else "member"
    ack = await facade.assign_organization(identity.user_id, user_id, organization_id, label=label)
    return _assignment(ack)


@router.delete(
    "/users/{user_id}/organizations/{organization_id}",
    response_model=AssignmentResponse,
)
async def remove_organization(
    user_id: int,
    organization_id: int,
    identity: CurrentIdentity = Depends(get_current_user),
    facade: SessionFacade = Depends(get_session_facade),
):
    return _assignment(
        await facade.remove_organization(identity.user_id, user_id, organization_id)
    )
