"""Roles API — the global role directory.

Learn: Reads are open to any signed-in user; writes need `admin`.
Deleting a role somebody still holds is refused with 409.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tessera.auth.dependencies import require_admin
from tessera.db.engine import get_db
from tessera.schemas.directory import DeletedResponse, RoleCreate, RoleRead, RoleUpdate
from tessera.services.directory_service import DirectoryService

router = APIRouter(prefix="/roles")

_admin = [Depends(require_admin)]


@router.get("", response_model=list[RoleRead])
async def list_roles(db: AsyncSession = Depends(get_db)):
    return await DirectoryService(db).list_roles()


@router.post("", response_model=RoleRead, status_code=201, dependencies=_admin)
async def create_role(body: RoleCreate, db: AsyncSession = Depends(get_db)):
    return await DirectoryService(db).create_role(body.name, body.description)


@router.get("/{role_id}", response_model=RoleRead)
async def get_role(role_id: int, db: AsyncSession = Depends(get_db)):
    return await DirectoryService(db).get_role(role_id)


@router.put("/{role_id}", response_model=RoleRead, dependencies=_admin)
async def update_role(role_id: int, body: RoleUpdate, db: AsyncSession = Depends(get_db)):
    return await DirectoryService(db).update_role(
        role_id, name=body.name, description=body.description
    )


@router.delete("/{role_id}", response_model=DeletedResponse, dependencies=_admin)
async def delete_role(role_id: int, db: AsyncSession = Depends(get_db)):
    await DirectoryService(db).delete_role(role_id)
    return DeletedResponse()
