"""
Workspace membership lifecycle.

Membership is the first input of every decision, so each change here is
audited and invalidates the workspace's cached decisions like any other
permission-affecting write.
"""
from typing import Optional

from sqlalchemy import select, delete

from app.features.permissions.audit import AuditAction, AuditEntity
from app.features.permissions.catalog import SubjectType
from app.features.permissions.errors import (
    CannotRemoveOwner,
    InvalidMembershipChange,
    MembershipForbidden,
)
from app.features.permissions.models import Group, ResourceOverride, RoleAssignment, group_members
from app.features.permissions.store import WorkspaceStore, concurrent_change
from app.features.users.models import User
from app.features.workspaces.models import MemberRole, Workspace, WorkspaceMember
from app.utils import get_logger


log = get_logger(__name__)


class MembershipStore(WorkspaceStore):
    """
    Creates workspaces and manages who belongs to them, and as what.

    Admin membership is in the owner's hands: only the owner may add an
    admin, promote to or demote from admin, or remove another admin.
    """

    async def create_workspace(self, name: str, owner_id: str) -> Workspace:
        async with self._transaction() as session:
            if await session.get(User, owner_id) is None:
                raise InvalidMembershipChange(f"User {owner_id} does not exist")
            workspace = Workspace(name=name.strip(), owner_id=owner_id)
            session.add(workspace)
            await session.flush()
            session.add(WorkspaceMember(
                workspace_id=workspace.id,
                user_id=owner_id,
                role=MemberRole.OWNER,
            ))
            await session.flush()
            await session.refresh(workspace)

        log.info("Created workspace %s (%s) owned by %s", workspace.id, workspace.name, owner_id)
        await self._committed(
            workspace.id, AuditAction.MEMBER_ADDED, AuditEntity.MEMBERSHIP, owner_id,
            performed_by=owner_id,
            target_user_id=owner_id,
            new_value={"role": MemberRole.OWNER.value},
        )
        return workspace

    async def add_member(
        self,
        workspace_id: str,
        user_id: str,
        role: str | MemberRole = MemberRole.MEMBER,
        *,
        performed_by: Optional[str],
    ) -> WorkspaceMember:
        role = MemberRole(role)
        if role is MemberRole.OWNER:
            raise InvalidMembershipChange("A workspace has exactly one owner; use an ownership transfer")

        async with self._transaction() as session:
            workspace = await self._require_workspace(session, workspace_id)
            if role is MemberRole.ADMIN:
                self._require_owner(workspace, performed_by, "add an admin")
            if await session.get(User, user_id) is None:
                raise InvalidMembershipChange(f"User {user_id} does not exist")
            if await self._membership(session, workspace_id, user_id) is not None:
                raise InvalidMembershipChange(f"User {user_id} is already a member of this workspace")

            member = WorkspaceMember(
                workspace_id=workspace_id,
                user_id=user_id,
                role=role,
                invited_by_id=performed_by,
            )
            session.add(member)
            await self._flush(session, concurrent_change("Workspace membership"))
            await session.refresh(member)

        log.info("Added user %s to workspace %s as %s", user_id, workspace_id, role.value)
        await self._committed(
            workspace_id, AuditAction.MEMBER_ADDED, AuditEntity.MEMBERSHIP, user_id,
            performed_by=performed_by,
            target_user_id=user_id,
            new_value={"role": role.value},
        )
        return member

    async def change_member_role(
        self,
        workspace_id: str,
        user_id: str,
        role: str | MemberRole,
        *,
        performed_by: Optional[str],
    ) -> WorkspaceMember:
        role = MemberRole(role)
        if role is MemberRole.OWNER:
            raise InvalidMembershipChange("Use an ownership transfer to make someone the owner")

        async with self._transaction() as session:
            workspace = await self._require_workspace(session, workspace_id)
            member = await self._require_member(session, workspace_id, user_id)
            if member.role is MemberRole.OWNER:
                raise InvalidMembershipChange("The owner's role changes only through an ownership transfer")
            if MemberRole.ADMIN in (member.role, role):
                self._require_owner(workspace, performed_by, "grant or revoke admin")
            previous = member.role
            if previous is role:
                return member
            member.role = role

        log.info("Changed role of %s in workspace %s: %s -> %s", user_id, workspace_id, previous.value, role.value)
        await self._committed(
            workspace_id, AuditAction.MEMBER_ROLE_CHANGED, AuditEntity.MEMBERSHIP, user_id,
            performed_by=performed_by,
            target_user_id=user_id,
            old_value={"role": previous.value},
            new_value={"role": role.value},
        )
        return member

    async def remove_member(self, workspace_id: str, user_id: str, *, performed_by: Optional[str]) -> None:
        """
        Remove a member along with everything that granted them access in the
        workspace: custom role assignments, group memberships and user overrides.
        """
        async with self._transaction() as session:
            workspace = await self._require_workspace(session, workspace_id)
            member = await self._require_member(session, workspace_id, user_id)
            if member.role is MemberRole.OWNER:
                raise CannotRemoveOwner(workspace_id)
            if member.role is MemberRole.ADMIN and performed_by != user_id:
                self._require_owner(workspace, performed_by, "remove an admin")

            roles = await session.execute(
                delete(RoleAssignment).where(
                    RoleAssignment.workspace_id == workspace_id,
                    RoleAssignment.user_id == user_id,
                )
            )
            groups = await session.execute(
                delete(group_members).where(
                    group_members.c.user_id == user_id,
                    group_members.c.group_id.in_(
                        select(Group.id).where(Group.workspace_id == workspace_id)
                    ),
                )
            )
            overrides = await session.execute(
                delete(ResourceOverride).where(
                    ResourceOverride.workspace_id == workspace_id,
                    ResourceOverride.subject_type == SubjectType.USER,
                    ResourceOverride.subject_id == user_id,
                )
            )
            previous = member.role
            await session.delete(member)

        log.info("Removed user %s from workspace %s", user_id, workspace_id)
        await self._committed(
            workspace_id, AuditAction.MEMBER_REMOVED, AuditEntity.MEMBERSHIP, user_id,
            performed_by=performed_by,
            target_user_id=user_id,
            old_value={
                "role": previous.value,
                "roles_removed": roles.rowcount,
                "groups_left": groups.rowcount,
                "overrides_removed": overrides.rowcount,
            },
        )

    async def transfer_ownership(
        self,
        workspace_id: str,
        new_owner_id: str,
        *,
        performed_by: Optional[str],
    ) -> Workspace:
        """Make another member the owner; the previous owner becomes an admin."""
        async with self._transaction() as session:
            workspace = await self._require_workspace(session, workspace_id)
            new_owner = await self._require_member(session, workspace_id, new_owner_id)
            if new_owner.role is MemberRole.OWNER:
                raise InvalidMembershipChange(f"User {new_owner_id} already owns this workspace")

            previous_owner_id = workspace.owner_id
            old_owner = await self._membership(session, workspace_id, previous_owner_id)
            if old_owner is not None:
                old_owner.role = MemberRole.ADMIN
            new_owner.role = MemberRole.OWNER
            workspace.owner_id = new_owner_id
            await session.flush()
            await session.refresh(workspace)

        log.info("Transferred workspace %s from %s to %s", workspace_id, previous_owner_id, new_owner_id)
        await self._committed(
            workspace_id, AuditAction.OWNERSHIP_TRANSFERRED, AuditEntity.WORKSPACE, workspace_id,
            performed_by=performed_by,
            target_user_id=new_owner_id,
            old_value={"owner_id": previous_owner_id},
            new_value={"owner_id": new_owner_id},
        )
        return workspace

    @staticmethod
    def _require_owner(workspace: Workspace, performed_by: Optional[str], action: str) -> None:
        # performed_by=None is a system call (seeding, migrations)
        if performed_by is not None and performed_by != workspace.owner_id:
            raise MembershipForbidden(f"Only the workspace owner can {action}")

    # Reads -----------------------------------------------------------------

    async def get_workspace(self, workspace_id: str) -> Workspace:
        async with self._reading() as session:
            return await self._require_workspace(session, workspace_id)

    async def get_membership(self, workspace_id: str, user_id: str) -> Optional[WorkspaceMember]:
        async with self._reading() as session:
            return await self._membership(session, workspace_id, user_id)

    async def list_members(self, workspace_id: str) -> list[WorkspaceMember]:
        async with self._reading() as session:
            await self._require_workspace(session, workspace_id)
            result = await session.execute(
                select(WorkspaceMember)
                .where(WorkspaceMember.workspace_id == workspace_id)
                .order_by(WorkspaceMember.joined_at, WorkspaceMember.user_id)
            )
            return list(result.scalars().all())

