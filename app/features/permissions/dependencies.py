"""
FastAPI dependencies for permission checks.

Other features guard their routes with ``require_workspace_permission`` and
``require_resource_level``; the administrative routes of this feature use
``ensure_workspace_admin``.
"""
from fastapi import Depends, HTTPException, status, Request

from app.features.permissions.catalog import (
    PermissionCode,
    ResourceLevel,
    ResourceType,
    collect_permission_codes,
)
from app.features.permissions.service import PermissionService
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)


def get_permission_service(request: Request) -> PermissionService:
    """The service instance created with the application."""
    return request.app.state.permission_service


def _param(request: Request, name: str) -> str:
    value = request.path_params.get(name) or request.query_params.get(name)
    if not value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing required parameter: {name}",
        )
    return value


async def ensure_workspace_admin(service: PermissionService, user: User, workspace_id: str) -> None:
    """
    Raise 403 unless ``user`` is the owner or an admin of the workspace.

    Raises:
        WorkspaceNotFound: the workspace does not exist (mapped to 404)
    """
    await service.members.get_workspace(workspace_id)
    member = await service.members.get_membership(workspace_id, user.id)
    if member is None or not member.role.bypasses_checks:
        log.warning("User %s denied administrative access to workspace %s", user.id, workspace_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Workspace owner or admin role required",
        )


def require_workspace_admin(workspace_param: str = "workspace_id"):
    """
    FastAPI dependency requiring the caller to own or administer the
    workspace named by ``workspace_param`` (path or query parameter).
    """
    async def admin_dependency(
        request: Request,
        current_user: User = Depends(get_current_user),
        service: PermissionService = Depends(get_permission_service),
    ) -> User:
        await ensure_workspace_admin(service, current_user, _param(request, workspace_param))
        return current_user

    return admin_dependency


def require_workspace_permission(code: str | PermissionCode, workspace_param: str = "workspace_id"):
    """
    FastAPI dependency to require a permission code in a workspace.

    Usage:
        @router.post("/workspaces/{workspace_id}/boards")
        async def create_board(
            user: User = Depends(require_workspace_permission("board.create"))
        ):
            ...

    Returns:
        Dependency function that returns the current user if they hold the permission

    Raises:
        HTTPException: 403 if the decision is a deny
    """
    # Unknown codes fail when the route is declared, not when it is called.
    (permission,) = collect_permission_codes([code])

    async def permission_dependency(
        request: Request,
        current_user: User = Depends(get_current_user),
        service: PermissionService = Depends(get_permission_service),
    ) -> User:
        workspace_id = _param(request, workspace_param)
        decision = await service.decide_workspace(current_user.id, workspace_id, permission)
        if not decision:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {permission.value}",
            )
        return current_user

    return permission_dependency


def require_resource_level(
    resource_type: str | ResourceType,
    level: str | ResourceLevel,
    resource_param: str | None = None,
):
    """
    FastAPI dependency to require at least ``level`` on a board or project.

    The resource ID is read from ``resource_param``, by default
    ``board_id`` or ``project_id``.

    Usage:
        @router.patch("/boards/{board_id}")
        async def update_board(
            user: User = Depends(require_resource_level("board", "edit"))
        ):
            ...
    """
    resource_type = ResourceType(resource_type)
    level = ResourceLevel(level)
    resource_param = resource_param or f"{resource_type.value}_id"

    async def level_dependency(
        request: Request,
        current_user: User = Depends(get_current_user),
        service: PermissionService = Depends(get_permission_service),
    ) -> User:
        resource_id = _param(request, resource_param)
        decision = await service.decide_resource(current_user.id, resource_type, resource_id, level)
        if not decision:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {level.value} on {resource_type.value}",
            )
        return current_user

    return level_dependency
