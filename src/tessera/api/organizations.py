"""Organizations API.

Learn: Listing is open to signed-in users. Reading one organization is
org-scoped: members (any label) and global admins only. Writes need
`admin`. Deleting an organization drops its memberships too.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tessera.auth.dependencies import CurrentIdentity, get_current_user, require_admin
from tessera.db.engine import get_db
from tessera.schemas.directory import (
    DeletedResponse,
    OrganizationCreate,
    OrganizationRead,
    OrganizationUpdate,
)
from tessera.services.directory_service import DirectoryService
from tessera.services.rbac_service import Authorizer

router = APIRouter(prefix="/organizations")

_admin = [Depends(require_admin)]


@router.get("", response_model=list[OrganizationRead])
async def list_organizations(db: AsyncSession = Depends(get_db)):
    return await DirectoryService(db).list_organizations()


@router.post("", response_model=OrganizationRead, status_code=201, dependencies=_admin)
async def create_organization(body: OrganizationCreate, db: AsyncSession = Depends(get_db)):
    return await DirectoryService(db).create_organization(
        body.name, body.description, body.metadata
    )


@router.get("/{organization_id}", response_model=OrganizationRead)
async def get_organization(
    organization_id: int,
    identity: CurrentIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    directory = DirectoryService(db)
    # Unknown id is 404 for everyone; membership is checked second
    org = await directory.get_organization(organization_id)
    await Authorizer(db).require_organization(identity.user_id, organization_id)
    return org


@router.put("/{organization_id}", response_model=OrganizationRead, dependencies=_admin)
async def update_organization(
    organization_id: int,
    body: OrganizationUpdate,
    db: AsyncSession = Depends(get_db),
):
    return await DirectoryService(db).update_organization(
        organization_id,
        name=body.name,
        description=body.description,
        metadata=body.metadata,
    )


@router.delete("/{organization_id}", response_model=DeletedResponse, dependencies=_admin)
async def delete_organization(organization_id: int, db: AsyncSession = Depends(get_db)):
    await DirectoryService(db).delete_organization(organization_id)
    return DeletedResponse()
