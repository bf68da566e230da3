"""
Custom workspace roles and their assignment to members.
"""
from collections.abc import Iterable
from typing import Any, Dict, Optional

from sqlalchemy import select, delete, insert, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions.audit import AuditAction, AuditEntity
from app.features.permissions.catalog import collect_permission_codes, PermissionCode
from app.features.permissions.errors import (
    CannotDeleteProtectedRole,
    DuplicateRoleName,
    RoleNotFound,
)
from app.features.permissions.models import Role, RoleAssignment, role_permissions
from app.features.permissions.store import DEFAULT_COLOR, WorkspaceStore, concurrent_change
from app.features.workspaces.models import MemberRole
from app.utils import get_logger


log = get_logger(__name__)

# Names of the built-in membership roles cannot be reused for custom roles.
PROTECTED_ROLE_NAMES = frozenset(role.value for role in MemberRole)


def _check_name(name: str) -> str:
    name = name.strip()
    if name.lower() in PROTECTED_ROLE_NAMES:
        raise CannotDeleteProtectedRole(name)
    return name


def role_snapshot(role: Role) -> Dict[str, Any]:
    return {
        "name": role.name,
        "description": role.description,
        "color": role.color,
        "permissions": role.permission_codes,
    }


class RoleStore(WorkspaceStore):
    """CRUD for custom roles plus role assignment."""

    async def create_role(
        self,
        workspace_id: str,
        name: str,
        permission_codes: Iterable[str] = (),
        *,
        performed_by: Optional[str],
        description: Optional[str] = None,
        color: Optional[str] = None,
        is_default: bool = False,
    ) -> Role:
        name = _check_name(name)
        codes = collect_permission_codes(permission_codes)

        async with self._transaction() as session:
            await self._require_workspace(session, workspace_id)
            if await self._name_taken(session, workspace_id, name):
                raise DuplicateRoleName(name)

            role = Role(
                workspace_id=workspace_id,
                name=name,
                description=description,
                color=color or DEFAULT_COLOR,
                is_default=is_default,
            )
            session.add(role)
            await self._flush(session, DuplicateRoleName(name))
            await self._replace_grants(session, role.id, codes)
            await session.refresh(role)

        log.info("Created role %s (%s) in workspace %s", role.id, role.name, workspace_id)
        await self._committed(
            workspace_id, AuditAction.ROLE_CREATED, AuditEntity.ROLE, role.id,
            performed_by=performed_by,
            new_value=role_snapshot(role),
        )
        return role

    async def update_role(
        self,
        role_id: str,
        *,
        performed_by: Optional[str],
        name: Optional[str] = None,
        description: Optional[str] = None,
        color: Optional[str] = None,
        permission_codes: Optional[Iterable[str]] = None,
    ) -> Role:
        """
        Update a role's attributes. When ``permission_codes`` is given the
        role's grants are replaced by exactly that set.

        Concurrent updates of the same role are last-writer-wins.
        """
        codes = collect_permission_codes(permission_codes) if permission_codes is not None else None
        new_name = _check_name(name) if name is not None else None

        async with self._transaction() as session:
            role = await self._get(session, role_id)
            before = role_snapshot(role)

            if new_name is not None and new_name != role.name:
                if await self._name_taken(session, role.workspace_id, new_name):
                    raise DuplicateRoleName(new_name)
                role.name = new_name
            if description is not None:
                role.description = description
            if color is not None:
                role.color = color

            await self._flush(session, DuplicateRoleName(new_name or role.name))
            if codes is not None:
                await self._replace_grants(session, role.id, codes)
            await session.refresh(role)
            after = role_snapshot(role)

        if after == before:
            return role

        log.info("Updated role %s in workspace %s", role.id, role.workspace_id)
        await self._committed(
            role.workspace_id, AuditAction.ROLE_UPDATED, AuditEntity.ROLE, role.id,
            performed_by=performed_by,
            old_value=before,
            new_value=after,
        )
        return role

    async def delete_role(self, role_id: str, *, performed_by: Optional[str]) -> None:
        """Delete a role; its grants and assignments go with it."""
        async with self._transaction() as session:
            role = await self._get(session, role_id)
            if role.name.lower() in PROTECTED_ROLE_NAMES:
                raise CannotDeleteProtectedRole(role.name)

            before = role_snapshot(role)
            assignments = await session.execute(
                delete(RoleAssignment).where(RoleAssignment.role_id == role_id)
            )
            before["assignments_removed"] = assignments.rowcount
            # Grant rows are removed through the secondary relationship.
            await session.delete(role)
            workspace_id = role.workspace_id

        log.info("Deleted role %s from workspace %s", role_id, workspace_id)
        await self._committed(
            workspace_id, AuditAction.ROLE_DELETED, AuditEntity.ROLE, role_id,
            performed_by=performed_by,
            old_value=before,
        )

    async def assign_role(
        self,
        principal_id: str,
        workspace_id: str,
        role_id: str,
        *,
        performed_by: Optional[str],
    ) -> RoleAssignment:
        """Give a member a custom role. Assigning a held role is a no-op."""
        async with self._transaction() as session:
            role = await self._get(session, role_id)
            if role.workspace_id != workspace_id:
                raise RoleNotFound(role_id)
            await self._require_member(session, workspace_id, principal_id)

            existing = await self._assignment(session, principal_id, workspace_id, role_id)
            if existing is not None:
                return existing

            assignment = RoleAssignment(
                user_id=principal_id,
                workspace_id=workspace_id,
                role_id=role_id,
                assigned_by_id=performed_by,
            )
            session.add(assignment)
            await self._flush(session, concurrent_change("Role assignment"))

        log.info("Assigned role %s to user %s in workspace %s", role_id, principal_id, workspace_id)
        await self._committed(
            workspace_id, AuditAction.ROLE_ASSIGNED, AuditEntity.USER_ROLE, role_id,
            performed_by=performed_by,
            target_user_id=principal_id,
            new_value={"role_id": role_id, "role_name": role.name},
        )
        return assignment

    async def remove_role(
        self,
        principal_id: str,
        workspace_id: str,
        role_id: str,
        *,
        performed_by: Optional[str],
    ) -> bool:
        """Take a custom role away. Returns False if it was not held."""
        async with self._transaction() as session:
            role = await self._get(session, role_id)
            if role.workspace_id != workspace_id:
                raise RoleNotFound(role_id)
            result = await session.execute(
                delete(RoleAssignment).where(
                    RoleAssignment.user_id == principal_id,
                    RoleAssignment.workspace_id == workspace_id,
                    RoleAssignment.role_id == role_id,
                )
            )

        if not result.rowcount:
            return False

        log.info("Removed role %s from user %s in workspace %s", role_id, principal_id, workspace_id)
        await self._committed(
            workspace_id, AuditAction.ROLE_REMOVED, AuditEntity.USER_ROLE, role_id,
            performed_by=performed_by,
            target_user_id=principal_id,
            old_value={"role_id": role_id, "role_name": role.name},
        )
        return True

    # Reads -----------------------------------------------------------------

    async def get_role(self, role_id: str) -> Role:
        async with self._reading() as session:
            return await self._get(session, role_id)

    async def list_roles(self, workspace_id: str) -> list[tuple[Role, int]]:
        """Roles of a workspace by name, each with its number of assignees."""
        assignees = (
            select(RoleAssignment.role_id, func.count(RoleAssignment.id).label("assignees"))
            .group_by(RoleAssignment.role_id)
            .subquery()
        )
        stmt = (
            select(Role, func.coalesce(assignees.c.assignees, 0))
            .outerjoin(assignees, assignees.c.role_id == Role.id)
            .where(Role.workspace_id == workspace_id)
            .order_by(Role.name)
        )
        async with self._reading() as session:
            await self._require_workspace(session, workspace_id)
            rows = (await session.execute(stmt)).all()
        return [(role, count) for role, count in rows]

    async def list_assignments(self, workspace_id: str, principal_id: str) -> list[Role]:
        """Custom roles held by one principal in a workspace."""
        stmt = (
            select(Role)
            .join(RoleAssignment, RoleAssignment.role_id == Role.id)
            .where(
                RoleAssignment.workspace_id == workspace_id,
                RoleAssignment.user_id == principal_id,
            )
            .order_by(Role.name)
        )
        async with self._reading() as session:
            return list((await session.execute(stmt)).scalars().all())

    # Helpers ---------------------------------------------------------------

    @staticmethod
    async def _get(session: AsyncSession, role_id: str) -> Role:
        role = await session.get(Role, role_id)
        if role is None:
            raise RoleNotFound(role_id)
        return role

    @staticmethod
    async def _name_taken(session: AsyncSession, workspace_id: str, name: str) -> bool:
        result = await session.execute(
            select(Role.id).where(Role.workspace_id == workspace_id, Role.name == name)
        )
        return result.first() is not None

    @staticmethod
    async def _assignment(
        session: AsyncSession, principal_id: str, workspace_id: str, role_id: str,
    ) -> Optional[RoleAssignment]:
        result = await session.execute(
            select(RoleAssignment).where(
                RoleAssignment.user_id == principal_id,
                RoleAssignment.workspace_id == workspace_id,
                RoleAssignment.role_id == role_id,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _replace_grants(
        session: AsyncSession, role_id: str, codes: frozenset[PermissionCode],
    ) -> None:
        await session.execute(delete(role_permissions).where(role_permissions.c.role_id == role_id))
        if codes:
            await session.execute(
                insert(role_permissions),
                [{"role_id": role_id, "permission_code": code.value} for code in sorted(codes)],
            )
