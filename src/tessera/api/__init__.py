"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Auth is applied at the include_router level using FastAPI's
dependencies parameter. This protects all routes in each router
without modifying individual handlers. Health, auth and setup routers
are open: /auth/me checks the bearer token itself, and /auth/refresh and
/auth/logout are authorized by the refresh token they present.
"""

from fastapi import APIRouter, Depends

from tessera.api.admin import router as admin_router
from tessera.api.auth import router as auth_router
from tessera.api.health import router as health_router
from tessera.api.organizations import router as organizations_router
from tessera.api.roles import router as roles_router
from tessera.api.setup import router as setup_router
from tessera.auth.dependencies import get_current_user

# All protected routers require authentication
_auth = [Depends(get_current_user)]

api_router = APIRouter(prefix="/api/v1")

# Open routes — no auth required
api_router.include_router(health_router, tags=["health"])
api_router.include_router(auth_router, tags=["auth"])
api_router.include_router(setup_router, tags=["setup"])

# Protected routes — require a valid access token
api_router.include_router(roles_router, tags=["roles"], dependencies=_auth)
api_router.include_router(organizations_router, tags=["organizations"], dependencies=_auth)
api_router.include_router(admin_router, tags=["admin"], dependencies=_auth)
