"""
Public entry point of the permission engine.

``PermissionService`` wires the authorizer, the stores, the audit logger and
the decision cache around one session factory. Checks return booleans (or a
``Decision`` from the ``decide_*`` variants); mutations return the changed
entity and are audited by the store that performs them.
"""
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import config
from app.features.permissions.audit import AuditLogger
from app.features.permissions.authorizer import Authorizer, Decision
from app.features.permissions.cache import PermissionCache
from app.features.permissions.catalog import (
    PermissionCode,
    ResourceLevel,
    ResourceType,
    SubjectType,
)
from app.features.permissions.groups import GroupStore
from app.features.permissions.models import AuditLog, Group, ResourceOverride, Role, RoleAssignment
from app.features.permissions.overrides import OverrideStore
from app.features.permissions.resources import ResourceLocator
from app.features.permissions.roles import RoleStore
from app.features.workspaces.models import MemberRole
from app.features.workspaces.service import MembershipStore
from app.utils import get_logger


log = get_logger(__name__)


@dataclass
class PrincipalPermissions:
    """Everything that grants a principal access within one workspace."""
    principal_id: str
    workspace_id: str
    membership_role: Optional[MemberRole]
    roles: list[Role] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)
    groups: list[Group] = field(default_factory=list)
    overrides: list[ResourceOverride] = field(default_factory=list)


class PermissionService:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        locator: Optional[ResourceLocator] = None,
        cache: Optional[PermissionCache] = None,
        timeout: Optional[float] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.cache = cache
        self.audit = audit or AuditLogger(session_factory)
        self.authorizer = Authorizer(session_factory, locator=locator, cache=cache, timeout=timeout)
        self.roles = RoleStore(session_factory, self.audit, cache)
        self.groups = GroupStore(session_factory, self.audit, cache)
        self.overrides = OverrideStore(session_factory, self.audit, cache, locator=locator)
        self.members = MembershipStore(session_factory, self.audit, cache)

    # Checks ----------------------------------------------------------------

    async def check_workspace_permission(
        self,
        principal_id: str,
        workspace_id: str,
        code: str | PermissionCode,
        *,
        timeout: Optional[float] = None,
    ) -> bool:
        decision = await self.authorizer.decide_workspace(principal_id, workspace_id, code, timeout=timeout)
        return decision.allowed

    async def check_resource_permission(
        self,
        principal_id: str,
        resource_type: str | ResourceType,
        resource_id: str,
        required_level: str | ResourceLevel,
        *,
        timeout: Optional[float] = None,
    ) -> bool:
        decision = await self.authorizer.decide_resource(
            principal_id, resource_type, resource_id, required_level, timeout=timeout,
        )
        return decision.allowed

    async def decide_workspace(self, principal_id: str, workspace_id: str, code: str | PermissionCode) -> Decision:
        return await self.authorizer.decide_workspace(principal_id, workspace_id, code)

    async def decide_resource(
        self,
        principal_id: str,
        resource_type: str | ResourceType,
        resource_id: str,
        required_level: str | ResourceLevel,
    ) -> Decision:
        return await self.authorizer.decide_resource(principal_id, resource_type, resource_id, required_level)

    # Roles -----------------------------------------------------------------

    async def create_role(
        self,
        workspace_id: str,
        name: str,
        permission_codes: Iterable[str],
        *,
        performed_by: Optional[str],
        description: Optional[str] = None,
        color: Optional[str] = None,
        is_default: bool = False,
    ) -> Role:
        return await self.roles.create_role(
            workspace_id, name, permission_codes,
            performed_by=performed_by, description=description, color=color, is_default=is_default,
        )

    async def update_role(self, role_id: str, *, performed_by: Optional[str], **changes) -> Role:
        return await self.roles.update_role(role_id, performed_by=performed_by, **changes)

    async def delete_role(self, role_id: str, *, performed_by: Optional[str]) -> None:
        await self.roles.delete_role(role_id, performed_by=performed_by)

    async def assign_role(
        self, principal_id: str, workspace_id: str, role_id: str, *, performed_by: Optional[str],
    ) -> RoleAssignment:
        return await self.roles.assign_role(principal_id, workspace_id, role_id, performed_by=performed_by)

    async def remove_role(
        self, principal_id: str, workspace_id: str, role_id: str, *, performed_by: Optional[str],
    ) -> bool:
        return await self.roles.remove_role(principal_id, workspace_id, role_id, performed_by=performed_by)

    # Groups ----------------------------------------------------------------

    async def create_group(self, workspace_id: str, name: str, *, performed_by: Optional[str], **attrs) -> Group:
        return await self.groups.create_group(workspace_id, name, performed_by=performed_by, **attrs)

    async def update_group(self, group_id: str, *, performed_by: Optional[str], **changes) -> Group:
        return await self.groups.update_group(group_id, performed_by=performed_by, **changes)

    async def delete_group(self, group_id: str, *, performed_by: Optional[str]) -> None:
        await self.groups.delete_group(group_id, performed_by=performed_by)

    async def add_group_member(self, group_id: str, principal_id: str, *, performed_by: Optional[str]) -> bool:
        return await self.groups.add_member(group_id, principal_id, performed_by=performed_by)

    async def remove_group_member(self, group_id: str, principal_id: str, *, performed_by: Optional[str]) -> bool:
        return await self.groups.remove_member(group_id, principal_id, performed_by=performed_by)

    # Overrides -------------------------------------------------------------

    async def set_override(
        self,
        resource_type: str | ResourceType,
        resource_id: str,
        subject_type: str | SubjectType,
        subject_id: str,
        level: str | ResourceLevel,
        *,
        performed_by: Optional[str],
    ) -> ResourceOverride:
        return await self.overrides.set_override(
            resource_type, resource_id, subject_type, subject_id, level, performed_by=performed_by,
        )

    async def remove_override(
        self,
        resource_type: str | ResourceType,
        resource_id: str,
        subject_type: str | SubjectType,
        subject_id: str,
        *,
        performed_by: Optional[str],
    ) -> bool:
        return await self.overrides.remove_override(
            resource_type, resource_id, subject_type, subject_id, performed_by=performed_by,
        )

    async def list_overrides(self, resource_type: str | ResourceType, resource_id: str) -> list[ResourceOverride]:
        return await self.overrides.list_overrides(resource_type, resource_id)

    # Audit and summaries ---------------------------------------------------

    async def list_audit(
        self,
        workspace_id: str,
        skip: int = 0,
        limit: int = 50,
        *,
        action: Optional[str] = None,
        entity_type: Optional[str] = None,
    ) -> tuple[list[AuditLog], int]:
        limit = max(1, min(limit, config.AUDIT_PAGE_SIZE_MAX))
        return await self.audit.list_entries(
            workspace_id, skip=max(skip, 0), limit=limit, action=action, entity_type=entity_type,
        )

    async def get_principal_permissions(self, principal_id: str, workspace_id: str) -> PrincipalPermissions:
        membership_role, codes = await self.authorizer.permission_codes_for(principal_id, workspace_id)
        return PrincipalPermissions(
            principal_id=principal_id,
            workspace_id=workspace_id,
            membership_role=membership_role,
            roles=await self.roles.list_assignments(workspace_id, principal_id),
            permissions=sorted(code.value for code in codes),
            groups=await self.groups.groups_of(workspace_id, principal_id),
            overrides=await self.overrides.overrides_for_subject(workspace_id, SubjectType.USER, principal_id),
        )


def build_cache() -> Optional[PermissionCache]:
    if not config.PERMISSION_CACHE_ENABLED:
        log.info("Permission decision cache disabled")
        return None
    return PermissionCache(ttl=config.PERMISSION_CACHE_TTL, max_entries=config.PERMISSION_CACHE_MAX_ENTRIES)


def build_permission_service(
    session_factory: async_sessionmaker[AsyncSession],
    locator: Optional[ResourceLocator] = None,
) -> PermissionService:
    """Service configured from ``app.core.config``."""
    return PermissionService(
        session_factory,
        locator=locator,
        cache=build_cache(),
        timeout=config.PERMISSION_CHECK_TIMEOUT,
    )
