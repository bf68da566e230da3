"""
Pydantic schemas for workspaces and memberships.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict

from app.features.workspaces.models import MemberRole


class WorkspaceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class WorkspaceResponse(BaseModel):
    id: str
    name: str
    owner_id: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MemberAdd(BaseModel):
    """Schema for adding a member; ``owner`` is only reachable by transfer."""
    user_id: str
    role: MemberRole = MemberRole.MEMBER


class MemberRoleUpdate(BaseModel):
    role: MemberRole


class OwnershipTransfer(BaseModel):
    new_owner_id: str


class MemberResponse(BaseModel):
    id: str
    workspace_id: str
    user_id: str
    role: MemberRole
    invited_by_id: Optional[str] = None
    joined_at: datetime

    model_config = ConfigDict(from_attributes=True)
