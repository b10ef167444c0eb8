"""Setup API — one-time bootstrap of the first administrator.

Learn: A fresh install has users (anyone can log in with Google) but no
admin, so nobody can assign roles. This open endpoint promotes the
earliest user exactly once; afterwards it answers 409.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from tessera.api.deps import get_session_facade
from tessera.schemas.auth import UserRead
from tessera.services.session_facade import SessionFacade

router = APIRouter(prefix="/setup")


class FirstAdminResponse(BaseModel):
    message: str
    user: UserRead


@router.post("/first-admin", response_model=FirstAdminResponse)
async def make_first_user_admin(facade: SessionFacade = Depends(get_session_facade)):
    user = await facade.bootstrap_first_admin()
    return FirstAdminResponse(
        message=f"User {user.email} is now an admin",
        user=UserRead.model_validate(user),
    )
