"""Auth API — Google login, token refresh, current user, logout.

Learn: Routes for the session lifecycle:
- GET  /auth/google/url   → consent URL + anti-forgery state
- POST /auth/google/login → code + state → user + token pair
- POST /auth/refresh      → rotate the refresh token, new access token
- GET  /auth/me           → current user info
- POST /auth/logout       → revoke the refresh token's family

Handlers stay thin: the SessionFacade does the work and raises typed
errors, which the app-level handler turns into HTTP responses.
"""

from fastapi import APIRouter, Depends

from tessera.api.deps import get_session_facade
from tessera.auth.dependencies import CurrentIdentity, get_current_user
from tessera.schemas.auth import (
    AuthResponse,
    GoogleLoginRequest,
    LoginUrlResponse,
    LogoutRequest,
    LogoutResponse,
    MeResponse,
    RefreshRequest,
    RefreshResponse,
    UserRead,
)
from tessera.services.session_facade import SessionFacade

router = APIRouter(prefix="/auth")


# ─── Google login ───────────────────────────────────────


@router.get("/google/url", response_model=LoginUrlResponse)
async def google_login_url(facade: SessionFacade = Depends(get_session_facade)):
    """Issue a state and return the Google consent URL."""
    redirect = await facade.begin_login()
    return LoginUrlResponse(auth_url=redirect.auth_url, state=redirect.state)


@router.post("/google/login", response_model=AuthResponse)
async def google_login(
    body: GoogleLoginRequest,
    facade: SessionFacade = Depends(get_session_facade),
):
    """Exchange the authorization code for a session."""
    result = await facade.complete_login(body.code, body.state)
    return AuthResponse(
        user=UserRead.model_validate(result.user),
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type=result.token_type,
        expires_in=result.expires_in,
    )


# ─── Refresh ────────────────────────────────────────────


@router.post("/refresh", response_model=RefreshResponse)
async def refresh(
    body: RefreshRequest,
    facade: SessionFacade = Depends(get_session_facade),
):
    """Rotate a refresh token. Replaying an old one ends the session."""
    result = await facade.refresh(body.refresh_token)
    return RefreshResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type=result.token_type,
        expires_in=result.expires_in,
    )


# ─── Current user ───────────────────────────────────────


@router.get("/me", response_model=MeResponse)
async def get_me(
    identity: CurrentIdentity = Depends(get_current_user),
    facade: SessionFacade = Depends(get_session_facade),
):
    """Get the current authenticated user's info."""
    user = await facade.current_user(identity.token)
    return MeResponse(
        **UserRead.model_validate(user).model_dump(),
        roles=sorted(identity.roles),
    )


# ─── Logout ─────────────────────────────────────────────


@router.post("/logout", response_model=LogoutResponse)
async def logout(
    body: LogoutRequest,
    facade: SessionFacade = Depends(get_session_facade),
):
    """Revoke the session. Safe to call more than once."""
    ack = await facade.logout(body.refresh_token)
    return LogoutResponse(event_id=str(ack.event_id))
