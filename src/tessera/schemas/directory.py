"""Pydantic schemas for roles, organizations, and user assignments.

Learn: Separate "Create"/"Update" (input) from "Read" (output). Update
schemas make every field optional: only what the client sends changes.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from tessera.schemas.auth import UserRead


# ─── Roles ──────────────────────────────────────────────

class RoleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    description: str = ""


class RoleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    description: Optional[str] = None


class RoleRead(BaseModel):
    id: int
    name: str
    description: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


# ─── Organizations ──────────────────────────────────────

class OrganizationCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class OrganizationUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class OrganizationRead(BaseModel):
    id: int
    name: str
    description: str
    # ORM attribute is `meta`; `metadata` is reserved on declarative models
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="meta")
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True, "populate_by_name": True}


class MembershipRead(BaseModel):
    organization: OrganizationRead
    role: str
    joined_at: datetime


# ─── Users (admin views) ────────────────────────────────

class UserWithAccess(UserRead):
    roles: list[RoleRead] = []
    organizations: list[MembershipRead] = []


class AssignOrganizationRequest(BaseModel):
    role: str = Field(default="member", min_length=1, max_length=50)


class AssignmentResponse(BaseModel):
    """changed=False means the call was a no-op and no event was emitted."""
    changed: bool
    event_id: Optional[str] = None


class DeletedResponse(BaseModel):
    deleted: bool = True
