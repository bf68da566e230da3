"""
Workspace and membership API routes.
"""
from typing import List
from fastapi import APIRouter, Depends, HTTPException, Response, status

from app.features.permissions.catalog import PermissionCode
from app.features.permissions.dependencies import (
    get_permission_service,
    require_workspace_admin,
    require_workspace_permission,
)
from app.features.permissions.service import PermissionService
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.features.workspaces.models import MemberRole
from app.features.workspaces.schemas import (
    WorkspaceCreate,
    WorkspaceResponse,
    MemberAdd,
    MemberRoleUpdate,
    MemberResponse,
    OwnershipTransfer,
)
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


@router.post("", response_model=WorkspaceResponse, status_code=status.HTTP_201_CREATED)
async def create_workspace(
    workspace: WorkspaceCreate,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(get_current_user),
):
    """Create a workspace owned by the caller."""
    return await service.members.create_workspace(workspace.name, current_user.id)


@router.get("/{workspace_id}/members", response_model=List[MemberResponse])
async def list_members(
    workspace_id: str,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(require_workspace_permission(PermissionCode.WORKSPACE_VIEW)),
):
    return await service.members.list_members(workspace_id)


@router.post("/{workspace_id}/members", response_model=MemberResponse, status_code=status.HTTP_201_CREATED)
async def add_member(
    workspace_id: str,
    member: MemberAdd,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(require_workspace_permission(PermissionCode.WORKSPACE_MANAGE_MEMBERS)),
):
    """Add a member. Only the owner can add someone as an admin."""
    return await service.members.add_member(
        workspace_id, member.user_id, member.role, performed_by=current_user.id,
    )


@router.patch("/{workspace_id}/members/{user_id}", response_model=MemberResponse)
async def change_member_role(
    workspace_id: str,
    user_id: str,
    update: MemberRoleUpdate,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(require_workspace_admin()),
):
    """Change a member's role; granting or revoking admin is owner-only."""
    return await service.members.change_member_role(
        workspace_id, user_id, update.role, performed_by=current_user.id,
    )


@router.delete("/{workspace_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_member(
    workspace_id: str,
    user_id: str,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(get_current_user),
):
    """
    Remove a member and every grant they held in the workspace.

    Any member may remove themselves; removing someone else needs
    ``workspace.manage_members``, and only the owner can remove an admin.
    """
    if user_id != current_user.id:
        allowed = await service.check_workspace_permission(
            current_user.id, workspace_id, PermissionCode.WORKSPACE_MANAGE_MEMBERS,
        )
        if not allowed:
            await service.members.get_workspace(workspace_id)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {PermissionCode.WORKSPACE_MANAGE_MEMBERS.value}",
            )
    await service.members.remove_member(workspace_id, user_id, performed_by=current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{workspace_id}/transfer-ownership", response_model=WorkspaceResponse)
async def transfer_ownership(
    workspace_id: str,
    transfer: OwnershipTransfer,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(get_current_user),
):
    """Hand the workspace to another member (current owner only)."""
    member = await service.members.get_membership(workspace_id, current_user.id)
    if member is None or member.role is not MemberRole.OWNER:
        await service.members.get_workspace(workspace_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the workspace owner can transfer ownership",
        )
    return await service.members.transfer_ownership(
        workspace_id, transfer.new_owner_id, performed_by=current_user.id,
    )
