"""
Permission management API routes.

Provides endpoints for the permission catalog, custom roles, groups, resource
overrides, permission checks and the audit log. Engine errors are turned into
responses by the handler registered in ``app.main``.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from app.core import config
from app.features.permissions.catalog import (
    PermissionCode,
    ResourceLevel,
    ResourceType,
    SubjectType,
    list_catalog,
)
from app.features.permissions.dependencies import (
    ensure_workspace_admin,
    get_permission_service,
    require_workspace_admin,
    require_workspace_permission,
)
from app.features.permissions.schemas import (
    PermissionResponse,
    PermissionCatalogResponse,
    RoleCreate,
    RoleUpdate,
    RoleResponse,
    AssignRoleRequest,
    RoleAssignmentResponse,
    GroupCreate,
    GroupUpdate,
    GroupResponse,
    GroupMemberRequest,
    OverrideSet,
    OverrideResponse,
    WorkspaceCheckRequest,
    ResourceCheckRequest,
    CheckResponse,
    PrincipalPermissionsResponse,
    AuditLogResponse,
    AuditLogListResponse,
)
from app.features.permissions.service import PermissionService
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


def _group_response(group, member_ids: List[str]) -> GroupResponse:
    return GroupResponse.model_validate(group).model_copy(update={"member_ids": member_ids})


async def _ensure_resource_admin(
    service: PermissionService,
    user: User,
    resource_type: ResourceType,
    resource_id: str,
) -> None:
    if not await service.check_resource_permission(user.id, resource_type, resource_id, ResourceLevel.ADMIN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Admin level on this {resource_type.value} required",
        )


# ============================================================================
# Catalog Routes
# ============================================================================

@router.get("/catalog", response_model=PermissionCatalogResponse)
async def get_catalog(current_user: User = Depends(get_current_user)):
    """List every permission code, grouped by category."""
    categories = {
        category: [
            PermissionResponse(
                code=definition.code.value,
                name=definition.name,
                description=definition.description,
                category=definition.category,
            )
            for definition in definitions
        ]
        for category, definitions in list_catalog().items()
    }
    return PermissionCatalogResponse(categories=categories, total=len(PermissionCode))


# ============================================================================
# Role Routes
# ============================================================================

@router.get("/workspaces/{workspace_id}/roles", response_model=List[RoleResponse])
async def list_roles(
    workspace_id: str,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(require_workspace_permission(PermissionCode.WORKSPACE_VIEW)),
):
    """List a workspace's custom roles with their assignee counts."""
    roles = await service.roles.list_roles(workspace_id)
    return [
        RoleResponse.model_validate(role).model_copy(update={"user_count": count})
        for role, count in roles
    ]


@router.post("/workspaces/{workspace_id}/roles", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    workspace_id: str,
    role: RoleCreate,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(require_workspace_admin()),
):
    """Create a custom role (workspace owner/admin only)."""
    db_role = await service.create_role(
        workspace_id,
        role.name,
        role.permissions,
        performed_by=current_user.id,
        description=role.description,
        color=role.color,
    )
    return RoleResponse.model_validate(db_role)


@router.get("/roles/{role_id}", response_model=RoleResponse)
async def get_role(
    role_id: str,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(get_current_user),
):
    role = await service.roles.get_role(role_id)
    if not await service.check_workspace_permission(current_user.id, role.workspace_id, PermissionCode.WORKSPACE_VIEW):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Permission denied: workspace.view")
    return RoleResponse.model_validate(role)


@router.patch("/roles/{role_id}", response_model=RoleResponse)
async def update_role(
    role_id: str,
    role_update: RoleUpdate,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(get_current_user),
):
    """Update a role. A ``permissions`` list replaces the role's grants entirely."""
    role = await service.roles.get_role(role_id)
    await ensure_workspace_admin(service, current_user, role.workspace_id)

    update_data = role_update.model_dump(exclude_unset=True)
    if "permissions" in update_data:
        update_data["permission_codes"] = update_data.pop("permissions")
    db_role = await service.update_role(role_id, performed_by=current_user.id, **update_data)
    return RoleResponse.model_validate(db_role)


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(get_current_user),
):
    """Delete a role together with its grants and assignments."""
    role = await service.roles.get_role(role_id)
    await ensure_workspace_admin(service, current_user, role.workspace_id)
    await service.delete_role(role_id, performed_by=current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/workspaces/{workspace_id}/roles/{role_id}/assignments",
    response_model=RoleAssignmentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def assign_role(
    workspace_id: str,
    role_id: str,
    assignment: AssignRoleRequest,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(require_workspace_admin()),
):
    """Give a workspace member a custom role."""
    return await service.assign_role(assignment.user_id, workspace_id, role_id, performed_by=current_user.id)


@router.delete("/workspaces/{workspace_id}/roles/{role_id}/assignments/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_role(
    workspace_id: str,
    role_id: str,
    user_id: str,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(require_workspace_admin()),
):
    await service.remove_role(user_id, workspace_id, role_id, performed_by=current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Group Routes
# ============================================================================

@router.get("/workspaces/{workspace_id}/groups", response_model=List[GroupResponse])
async def list_groups(
    workspace_id: str,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(require_workspace_permission(PermissionCode.WORKSPACE_VIEW)),
):
    groups = await service.groups.list_groups(workspace_id)
    return [_group_response(group, member_ids) for group, member_ids in groups]


@router.post("/workspaces/{workspace_id}/groups", response_model=GroupResponse, status_code=status.HTTP_201_CREATED)
async def create_group(
    workspace_id: str,
    group: GroupCreate,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(require_workspace_admin()),
):
    """Create a group, optionally with initial members."""
    db_group = await service.create_group(
        workspace_id,
        group.name,
        performed_by=current_user.id,
        description=group.description,
        color=group.color,
        member_ids=group.member_ids,
    )
    return _group_response(db_group, sorted(set(group.member_ids)))


@router.get("/groups/{group_id}", response_model=GroupResponse)
async def get_group(
    group_id: str,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(get_current_user),
):
    group, member_ids = await service.groups.get_group(group_id)
    if not await service.check_workspace_permission(current_user.id, group.workspace_id, PermissionCode.WORKSPACE_VIEW):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Permission denied: workspace.view")
    return _group_response(group, member_ids)


@router.patch("/groups/{group_id}", response_model=GroupResponse)
async def update_group(
    group_id: str,
    group_update: GroupUpdate,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(get_current_user),
):
    group, _ = await service.groups.get_group(group_id)
    await ensure_workspace_admin(service, current_user, group.workspace_id)
    await service.update_group(group_id, performed_by=current_user.id, **group_update.model_dump(exclude_unset=True))
    group, member_ids = await service.groups.get_group(group_id)
    return _group_response(group, member_ids)


@router.delete("/groups/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_group(
    group_id: str,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(get_current_user),
):
    """Delete a group, its memberships and every override granted to it."""
    group, _ = await service.groups.get_group(group_id)
    await ensure_workspace_admin(service, current_user, group.workspace_id)
    await service.delete_group(group_id, performed_by=current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/groups/{group_id}/members", response_model=GroupResponse)
async def add_group_member(
    group_id: str,
    member: GroupMemberRequest,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(get_current_user),
):
    group, _ = await service.groups.get_group(group_id)
    await ensure_workspace_admin(service, current_user, group.workspace_id)
    await service.add_group_member(group_id, member.user_id, performed_by=current_user.id)
    group, member_ids = await service.groups.get_group(group_id)
    return _group_response(group, member_ids)


@router.delete("/groups/{group_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_group_member(
    group_id: str,
    user_id: str,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(get_current_user),
):
    group, _ = await service.groups.get_group(group_id)
    await ensure_workspace_admin(service, current_user, group.workspace_id)
    await service.remove_group_member(group_id, user_id, performed_by=current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Resource Override Routes
# ============================================================================

@router.get("/resources/{resource_type}/{resource_id}/overrides", response_model=List[OverrideResponse])
async def list_overrides(
    resource_type: ResourceType,
    resource_id: str,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(get_current_user),
):
    """List the user and group overrides on a board or project."""
    if not await service.check_resource_permission(current_user.id, resource_type, resource_id, ResourceLevel.VIEW):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Permission denied: view on {resource_type.value}",
        )
    return await service.list_overrides(resource_type, resource_id)


@router.put("/resources/{resource_type}/{resource_id}/overrides", response_model=OverrideResponse)
async def set_override(
    resource_type: ResourceType,
    resource_id: str,
    override: OverrideSet,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(get_current_user),
):
    """Grant or change a subject's level on a resource (requires admin level on it)."""
    await _ensure_resource_admin(service, current_user, resource_type, resource_id)
    return await service.set_override(
        resource_type,
        resource_id,
        override.subject_type,
        override.subject_id,
        override.level,
        performed_by=current_user.id,
    )


@router.delete(
    "/resources/{resource_type}/{resource_id}/overrides/{subject_type}/{subject_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def remove_override(
    resource_type: ResourceType,
    resource_id: str,
    subject_type: SubjectType,
    subject_id: str,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(get_current_user),
):
    await _ensure_resource_admin(service, current_user, resource_type, resource_id)
    await service.remove_override(resource_type, resource_id, subject_type, subject_id, performed_by=current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Check Routes
# ============================================================================

@router.post("/check/workspace", response_model=CheckResponse)
async def check_workspace_permission(
    check: WorkspaceCheckRequest,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(get_current_user),
):
    """
    Check a workspace permission.

    Any user may check themselves; checking someone else requires the
    workspace owner or admin role.
    """
    principal_id = check.user_id or current_user.id
    if principal_id != current_user.id:
        await ensure_workspace_admin(service, current_user, check.workspace_id)

    decision = await service.decide_workspace(principal_id, check.workspace_id, check.permission)
    return CheckResponse(allowed=decision.allowed, reason=decision.reason.value)


@router.post("/check/resource", response_model=CheckResponse)
async def check_resource_permission(
    check: ResourceCheckRequest,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(get_current_user),
):
    """Check a level on a board or project; same rules as the workspace check."""
    principal_id = check.user_id or current_user.id
    if principal_id != current_user.id:
        await _ensure_resource_admin(service, current_user, check.resource_type, check.resource_id)

    decision = await service.decide_resource(principal_id, check.resource_type, check.resource_id, check.level)
    return CheckResponse(
        allowed=decision.allowed,
        reason=decision.reason.value,
        effective_level=decision.effective_level,
    )


@router.get("/workspaces/{workspace_id}/users/{user_id}", response_model=PrincipalPermissionsResponse)
async def get_user_permissions(
    workspace_id: str,
    user_id: str,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(get_current_user),
):
    """Membership role, custom roles, effective codes, groups and overrides of a user."""
    if user_id != current_user.id:
        await ensure_workspace_admin(service, current_user, workspace_id)
    summary = await service.get_principal_permissions(user_id, workspace_id)
    return PrincipalPermissionsResponse.model_validate(summary)


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/workspaces/{workspace_id}/audit", response_model=AuditLogListResponse)
async def list_audit_logs(
    workspace_id: str,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=config.AUDIT_PAGE_SIZE_MAX),
    action: Optional[str] = None,
    entity_type: Optional[str] = None,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(require_workspace_permission(PermissionCode.ADMIN_VIEW_AUDIT)),
):
    """List a workspace's audit entries, newest first."""
    entries, total = await service.list_audit(
        workspace_id, skip, limit, action=action, entity_type=entity_type,
    )
    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in entries],
        total=total,
        skip=skip,
        limit=limit,
    )
