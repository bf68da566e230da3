"""
Errors raised by the permission engine.

A normal access-denied outcome is never an exception: decisions return a
Deny ``Decision``. Everything here means either the request was rejected
before it could be applied, or the engine could not evaluate it.
"""
from collections.abc import Iterable
from fastapi import status


class PermissionEngineError(Exception):
    """Base class; ``status_code`` is used by the HTTP exception handler."""
    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "permission_error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


# Lookups ---------------------------------------------------------------

class NotFoundError(PermissionEngineError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class ResourceNotFound(NotFoundError):
    """The owning workspace of a board/project cannot be determined."""
    code = "resource_not_found"

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(f"{resource_type} {resource_id} not found")
        self.resource_type = resource_type
        self.resource_id = resource_id


class WorkspaceNotFound(NotFoundError):
    code = "workspace_not_found"

    def __init__(self, workspace_id: str):
        super().__init__(f"Workspace {workspace_id} not found")
        self.workspace_id = workspace_id


class RoleNotFound(NotFoundError):
    code = "role_not_found"

    def __init__(self, role_id: str):
        super().__init__(f"Role {role_id} not found")
        self.role_id = role_id


class GroupNotFound(NotFoundError):
    code = "group_not_found"

    def __init__(self, group_id: str):
        super().__init__(f"Group {group_id} not found")
        self.group_id = group_id


# Conflicts -------------------------------------------------------------

class ConflictError(PermissionEngineError):
    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


class DuplicateRoleName(ConflictError):
    code = "duplicate_role_name"

    def __init__(self, name: str):
        super().__init__(f"A role named {name!r} already exists in this workspace")
        self.name = name


class DuplicateGroupName(ConflictError):
    code = "duplicate_group_name"

    def __init__(self, name: str):
        super().__init__(f"A group named {name!r} already exists in this workspace")
        self.name = name


# Invariant violations --------------------------------------------------

class CannotRemoveOwner(PermissionEngineError):
    code = "cannot_remove_owner"

    def __init__(self, workspace_id: str):
        super().__init__("The workspace owner cannot be removed; transfer ownership first")
        self.workspace_id = workspace_id


class CannotDeleteProtectedRole(PermissionEngineError):
    code = "cannot_delete_protected_role"

    def __init__(self, name: str):
        super().__init__(f"{name!r} is a built-in membership role and cannot be managed as a custom role")
        self.name = name


class InvalidMembershipChange(PermissionEngineError):
    code = "invalid_membership_change"


class MembershipForbidden(PermissionEngineError):
    """Only the workspace owner may hand out or take away admin membership."""
    status_code = status.HTTP_403_FORBIDDEN
    code = "membership_forbidden"


class NotWorkspaceMember(PermissionEngineError):
    code = "not_workspace_member"

    def __init__(self, principal_id: str, workspace_id: str):
        super().__init__(f"User {principal_id} is not a member of workspace {workspace_id}")
        self.principal_id = principal_id
        self.workspace_id = workspace_id


class UnknownPermissionCode(PermissionEngineError):
    code = "unknown_permission_code"

    def __init__(self, codes: Iterable[str]):
        self.codes = sorted(codes)
        super().__init__(f"Unknown permission code(s): {', '.join(self.codes)}")


# Cannot evaluate -------------------------------------------------------

class StorageError(PermissionEngineError):
    """Infrastructure failure; never to be read as a Deny."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "storage_error"


class EvaluationTimeout(PermissionEngineError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "evaluation_timeout"

    def __init__(self, timeout: float):
        super().__init__(f"Permission evaluation exceeded {timeout:g}s")
        self.timeout = timeout
