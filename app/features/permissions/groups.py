"""
Groups of workspace members.

A group only matters to resource decisions: an override granted to a group
applies to every member of it.
"""
from collections.abc import Iterable
from typing import Any, Dict, Optional

from sqlalchemy import select, delete, insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions.audit import AuditAction, AuditEntity
from app.features.permissions.catalog import SubjectType
from app.features.permissions.errors import DuplicateGroupName, GroupNotFound, NotWorkspaceMember
from app.features.permissions.models import Group, ResourceOverride, group_members
from app.features.permissions.store import DEFAULT_COLOR, WorkspaceStore, concurrent_change
from app.features.workspaces.models import WorkspaceMember
from app.utils import get_logger


log = get_logger(__name__)


def group_snapshot(group: Group, member_ids: Optional[list[str]] = None) -> Dict[str, Any]:
    snapshot: Dict[str, Any] = {
        "name": group.name,
        "description": group.description,
        "color": group.color,
    }
    if member_ids is not None:
        snapshot["member_ids"] = member_ids
    return snapshot


class GroupStore(WorkspaceStore):

    async def create_group(
        self,
        workspace_id: str,
        name: str,
        *,
        performed_by: Optional[str],
        description: Optional[str] = None,
        color: Optional[str] = None,
        member_ids: Iterable[str] = (),
    ) -> Group:
        name = name.strip()
        member_ids = sorted(set(member_ids))

        async with self._transaction() as session:
            await self._require_workspace(session, workspace_id)
            if await self._name_taken(session, workspace_id, name):
                raise DuplicateGroupName(name)
            await self._require_members(session, workspace_id, member_ids)

            group = Group(
                workspace_id=workspace_id,
                name=name,
                description=description,
                color=color or DEFAULT_COLOR,
                created_by_id=performed_by,
            )
            session.add(group)
            await self._flush(session, DuplicateGroupName(name))
            if member_ids:
                await session.execute(
                    insert(group_members),
                    [{"group_id": group.id, "user_id": user_id} for user_id in member_ids],
                )
            await session.refresh(group)

        log.info("Created group %s (%s) with %s member(s)", group.id, group.name, len(member_ids))
        await self._committed(
            workspace_id, AuditAction.GROUP_CREATED, AuditEntity.GROUP, group.id,
            performed_by=performed_by,
            new_value=group_snapshot(group, member_ids),
        )
        return group

    async def update_group(
        self,
        group_id: str,
        *,
        performed_by: Optional[str],
        name: Optional[str] = None,
        description: Optional[str] = None,
        color: Optional[str] = None,
    ) -> Group:
        new_name = name.strip() if name is not None else None

        async with self._transaction() as session:
            group = await self._get(session, group_id)
            before = group_snapshot(group)

            if new_name is not None and new_name != group.name:
                if await self._name_taken(session, group.workspace_id, new_name):
                    raise DuplicateGroupName(new_name)
                group.name = new_name
            if description is not None:
                group.description = description
            if color is not None:
                group.color = color

            await self._flush(session, DuplicateGroupName(new_name or group.name))
            await session.refresh(group)
            after = group_snapshot(group)

        if after == before:
            return group

        await self._committed(
            group.workspace_id, AuditAction.GROUP_UPDATED, AuditEntity.GROUP, group.id,
            performed_by=performed_by,
            old_value=before,
            new_value=after,
        )
        return group

    async def delete_group(self, group_id: str, *, performed_by: Optional[str]) -> None:
        """Delete a group with its memberships and every override granted to it."""
        async with self._transaction() as session:
            group = await self._get(session, group_id)
            before = group_snapshot(group, await self._member_ids(session, group_id))

            overrides = await session.execute(
                delete(ResourceOverride).where(
                    ResourceOverride.subject_type == SubjectType.GROUP,
                    ResourceOverride.subject_id == group_id,
                )
            )
            before["overrides_removed"] = overrides.rowcount
            await session.execute(delete(group_members).where(group_members.c.group_id == group_id))
            await session.delete(group)
            workspace_id = group.workspace_id

        log.info("Deleted group %s from workspace %s", group_id, workspace_id)
        await self._committed(
            workspace_id, AuditAction.GROUP_DELETED, AuditEntity.GROUP, group_id,
            performed_by=performed_by,
            old_value=before,
        )

    async def add_member(self, group_id: str, principal_id: str, *, performed_by: Optional[str]) -> bool:
        """Add a workspace member to a group. Returns False if already in it."""
        async with self._transaction() as session:
            group = await self._get(session, group_id)
            await self._require_member(session, group.workspace_id, principal_id)
            if principal_id in await self._member_ids(session, group_id):
                return False
            try:
                await session.execute(insert(group_members).values(group_id=group_id, user_id=principal_id))
            except IntegrityError as exc:
                raise concurrent_change("Group membership") from exc

        await self._committed(
            group.workspace_id, AuditAction.GROUP_MEMBER_ADDED, AuditEntity.GROUP_MEMBER, group_id,
            performed_by=performed_by,
            target_user_id=principal_id,
            new_value={"group_id": group_id, "group_name": group.name, "user_id": principal_id},
        )
        return True

    async def remove_member(self, group_id: str, principal_id: str, *, performed_by: Optional[str]) -> bool:
        """Remove a principal from a group. Returns False if not in it."""
        async with self._transaction() as session:
            group = await self._get(session, group_id)
            result = await session.execute(
                delete(group_members).where(
                    group_members.c.group_id == group_id,
                    group_members.c.user_id == principal_id,
                )
            )

        if not result.rowcount:
            return False

        await self._committed(
            group.workspace_id, AuditAction.GROUP_MEMBER_REMOVED, AuditEntity.GROUP_MEMBER, group_id,
            performed_by=performed_by,
            target_user_id=principal_id,
            old_value={"group_id": group_id, "group_name": group.name, "user_id": principal_id},
        )
        return True

    # Reads -----------------------------------------------------------------

    async def get_group(self, group_id: str) -> tuple[Group, list[str]]:
        async with self._reading() as session:
            group = await self._get(session, group_id)
            return group, await self._member_ids(session, group_id)

    async def list_groups(self, workspace_id: str) -> list[tuple[Group, list[str]]]:
        """Groups of a workspace by name, each with its sorted member IDs."""
        async with self._reading() as session:
            await self._require_workspace(session, workspace_id)
            groups = (
                await session.execute(
                    select(Group).where(Group.workspace_id == workspace_id).order_by(Group.name)
                )
            ).scalars().all()
            rows = (
                await session.execute(
                    select(group_members.c.group_id, group_members.c.user_id)
                    .join(Group, Group.id == group_members.c.group_id)
                    .where(Group.workspace_id == workspace_id)
                    .order_by(group_members.c.user_id)
                )
            ).all()

        members: dict[str, list[str]] = {}
        for group_id, user_id in rows:
            members.setdefault(group_id, []).append(user_id)
        return [(group, members.get(group.id, [])) for group in groups]

    async def groups_of(self, workspace_id: str, principal_id: str) -> list[Group]:
        """Groups of a workspace that a principal belongs to."""
        stmt = (
            select(Group)
            .join(group_members, group_members.c.group_id == Group.id)
            .where(Group.workspace_id == workspace_id, group_members.c.user_id == principal_id)
            .order_by(Group.name)
        )
        async with self._reading() as session:
            return list((await session.execute(stmt)).scalars().all())

    # Helpers ---------------------------------------------------------------

    @staticmethod
    async def _get(session: AsyncSession, group_id: str) -> Group:
        group = await session.get(Group, group_id)
        if group is None:
            raise GroupNotFound(group_id)
        return group

    @staticmethod
    async def _name_taken(session: AsyncSession, workspace_id: str, name: str) -> bool:
        result = await session.execute(
            select(Group.id).where(Group.workspace_id == workspace_id, Group.name == name)
        )
        return result.first() is not None

    @staticmethod
    async def _member_ids(session: AsyncSession, group_id: str) -> list[str]:
        result = await session.execute(
            select(group_members.c.user_id)
            .where(group_members.c.group_id == group_id)
            .order_by(group_members.c.user_id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def _require_members(session: AsyncSession, workspace_id: str, user_ids: list[str]) -> None:
        if not user_ids:
            return
        result = await session.execute(
            select(WorkspaceMember.user_id).where(
                WorkspaceMember.workspace_id == workspace_id,
                WorkspaceMember.user_id.in_(user_ids),
            )
        )
        missing = sorted(set(user_ids) - set(result.scalars().all()))
        if missing:
            raise NotWorkspaceMember(missing[0], workspace_id)
