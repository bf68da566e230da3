"""
Pydantic schemas for permission management.

Request and response models for the catalog, roles, groups, resource
overrides, checks and the audit log.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.features.permissions.catalog import ResourceLevel, ResourceType, SubjectType
from app.features.workspaces.models import MemberRole


HEX_COLOR = r"^#[0-9a-fA-F]{6}$"


# ============================================================================
# Catalog Schemas
# ============================================================================

class PermissionResponse(BaseModel):
    """Catalog permission."""
    code: str
    name: str
    description: Optional[str] = None
    category: str

    model_config = ConfigDict(from_attributes=True)


class PermissionCatalogResponse(BaseModel):
    """Catalog grouped by category."""
    categories: Dict[str, List[PermissionResponse]]
    total: int


# ============================================================================
# Role Schemas
# ============================================================================

class RoleBase(BaseModel):
    """Base role schema."""
    name: str = Field(..., min_length=1, max_length=100, description="Role name, unique per workspace")
    description: Optional[str] = Field(None, max_length=1000, description="Role description")
    color: Optional[str] = Field(None, pattern=HEX_COLOR, description="Display color (#RRGGBB)")


class RoleCreate(RoleBase):
    """Schema for creating a custom role."""
    permissions: List[str] = Field(default_factory=list, description="Permission codes granted by the role")

    @field_validator('name')
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError('Role name must not be blank')
        return v.strip()


class RoleUpdate(BaseModel):
    """Schema for updating a role. ``permissions`` replaces the whole grant set."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    color: Optional[str] = Field(None, pattern=HEX_COLOR)
    permissions: Optional[List[str]] = None


class RoleResponse(BaseModel):
    """Schema for role response."""
    id: str
    workspace_id: str
    name: str
    description: Optional[str] = None
    color: str
    is_default: bool
    permissions: List[str] = Field(default_factory=list, validation_alias="permission_codes")
    user_count: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class AssignRoleRequest(BaseModel):
    """Schema for giving a role to a workspace member."""
    user_id: str


class RoleAssignmentResponse(BaseModel):
    id: str
    user_id: str
    workspace_id: str
    role_id: str
    assigned_by_id: Optional[str] = None
    assigned_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Group Schemas
# ============================================================================

class GroupCreate(BaseModel):
    """Schema for creating a group."""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    color: Optional[str] = Field(None, pattern=HEX_COLOR)
    member_ids: List[str] = Field(default_factory=list, description="Initial members (workspace members only)")


class GroupUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    color: Optional[str] = Field(None, pattern=HEX_COLOR)


class GroupResponse(BaseModel):
    """Schema for group response."""
    id: str
    workspace_id: str
    name: str
    description: Optional[str] = None
    color: str
    created_by_id: Optional[str] = None
    member_ids: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class GroupMemberRequest(BaseModel):
    user_id: str


class GroupRef(BaseModel):
    id: str
    name: str

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Resource Override Schemas
# ============================================================================

class OverrideSet(BaseModel):
    """Grant a level on a resource to a user or a group."""
    subject_type: SubjectType
    subject_id: str = Field(..., min_length=1, max_length=26)
    level: ResourceLevel


class OverrideResponse(BaseModel):
    id: str
    workspace_id: str
    resource_type: ResourceType
    resource_id: str
    subject_type: SubjectType
    subject_id: str
    level: ResourceLevel
    granted_by_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Check Schemas
# ============================================================================

class WorkspaceCheckRequest(BaseModel):
    """Schema for a workspace permission check."""
    workspace_id: str
    permission: str = Field(..., description="Permission code (e.g., 'board.create')")
    user_id: Optional[str] = Field(None, description="Principal to check; defaults to the caller")


class ResourceCheckRequest(BaseModel):
    """Schema for a resource level check."""
    resource_type: ResourceType
    resource_id: str
    level: ResourceLevel
    user_id: Optional[str] = Field(None, description="Principal to check; defaults to the caller")


class CheckResponse(BaseModel):
    """Schema for a check response."""
    allowed: bool
    reason: str
    effective_level: Optional[ResourceLevel] = None


class PrincipalPermissionsResponse(BaseModel):
    """Everything that grants a principal access in a workspace."""
    principal_id: str
    workspace_id: str
    membership_role: Optional[MemberRole] = None
    roles: List[RoleResponse]
    permissions: List[str]
    groups: List[GroupRef]
    overrides: List[OverrideResponse]

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    workspace_id: str
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    performed_by: Optional[str] = None
    target_user_id: Optional[str] = None
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    skip: int
    limit: int
