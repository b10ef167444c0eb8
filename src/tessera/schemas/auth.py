"""Pydantic schemas for the login / session endpoints.

Learn: Response models mirror what a browser client stores: the token
pair, its lifetime, and the user it belongs to. Refresh tokens travel in
request bodies, never in query strings (they'd end up in access logs).
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class UserRead(BaseModel):
    id: int
    email: str
    name: str
    picture: str
    provider: str
    is_active: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class LoginUrlResponse(BaseModel):
    auth_url: str
    state: str


class GoogleLoginRequest(BaseModel):
    code: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)


class AuthResponse(BaseModel):
    user: UserRead
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class RefreshResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutResponse(BaseModel):
    message: str = "Logged out"
    event_id: str


class MeResponse(UserRead):
    """Current user plus the role snapshot their access token carries."""
    roles: list[str] = []
