"""
Per-resource level overrides for users and groups.
"""
from typing import Any, Dict, Optional

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.features.permissions.audit import AuditAction, AuditEntity, AuditLogger
from app.features.permissions.cache import PermissionCache
from app.features.permissions.catalog import ResourceLevel, ResourceType, SubjectType
from app.features.permissions.errors import GroupNotFound, ResourceNotFound
from app.features.permissions.models import Group, ResourceOverride
from app.features.permissions.resources import ResourceLocator, TableResourceLocator
from app.features.permissions.store import WorkspaceStore, concurrent_change
from app.utils import get_logger


log = get_logger(__name__)


def override_snapshot(override: ResourceOverride) -> Dict[str, Any]:
    return {
        "resource_type": override.resource_type.value,
        "resource_id": override.resource_id,
        "subject_type": override.subject_type.value,
        "subject_id": override.subject_id,
        "level": override.level.value,
    }


class OverrideStore(WorkspaceStore):
    """
    Keeps at most one override per (resource, subject).

    ``set_override`` is an upsert: setting the level a subject already holds
    changes nothing and records nothing.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit: AuditLogger,
        cache: Optional[PermissionCache] = None,
        locator: Optional[ResourceLocator] = None,
    ):
        super().__init__(session_factory, audit, cache)
        self.locator = locator or TableResourceLocator()

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
        resource_type = ResourceType(resource_type)
        subject_type = SubjectType(subject_type)
        level = ResourceLevel(level)

        async with self._transaction() as session:
            workspace_id = await self._resolve(session, resource_type, resource_id)
            if subject_type is SubjectType.GROUP:
                group = await session.get(Group, subject_id)
                if group is None or group.workspace_id != workspace_id:
                    raise GroupNotFound(subject_id)

            override = await self._find(session, resource_type, resource_id, subject_type, subject_id)
            if override is not None and override.level is level:
                return override

            before = override_snapshot(override) if override is not None else None
            if override is None:
                override = ResourceOverride(
                    workspace_id=workspace_id,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    subject_type=subject_type,
                    subject_id=subject_id,
                    level=level,
                    granted_by_id=performed_by,
                )
                session.add(override)
            else:
                override.level = level
                override.granted_by_id = performed_by
            await self._flush(session, concurrent_change("Resource override"))
            await session.refresh(override)
            after = override_snapshot(override)

        log.info(
            "Override %s:%s for %s:%s set to %s",
            resource_type.value, resource_id, subject_type.value, subject_id, level.value,
        )
        await self._committed(
            workspace_id, AuditAction.OVERRIDE_SET, AuditEntity.RESOURCE_OVERRIDE, override.id,
            performed_by=performed_by,
            target_user_id=subject_id if subject_type is SubjectType.USER else None,
            old_value=before,
            new_value=after,
        )
        return override

    async def remove_override(
        self,
        resource_type: str | ResourceType,
        resource_id: str,
        subject_type: str | SubjectType,
        subject_id: str,
        *,
        performed_by: Optional[str],
    ) -> bool:
        """Delete an override. Returns False if there was none."""
        resource_type = ResourceType(resource_type)
        subject_type = SubjectType(subject_type)

        async with self._transaction() as session:
            workspace_id = await self._resolve(session, resource_type, resource_id)
            override = await self._find(session, resource_type, resource_id, subject_type, subject_id)
            if override is None:
                return False
            before = override_snapshot(override)
            await session.execute(delete(ResourceOverride).where(ResourceOverride.id == override.id))

        await self._committed(
            workspace_id, AuditAction.OVERRIDE_REMOVED, AuditEntity.RESOURCE_OVERRIDE, override.id,
            performed_by=performed_by,
            target_user_id=subject_id if subject_type is SubjectType.USER else None,
            old_value=before,
        )
        return True

    async def list_overrides(
        self,
        resource_type: str | ResourceType,
        resource_id: str,
    ) -> list[ResourceOverride]:
        resource_type = ResourceType(resource_type)
        stmt = (
            select(ResourceOverride)
            .where(
                ResourceOverride.resource_type == resource_type,
                ResourceOverride.resource_id == resource_id,
            )
            .order_by(ResourceOverride.subject_type, ResourceOverride.subject_id)
        )
        async with self._reading() as session:
            await self._resolve(session, resource_type, resource_id)
            return list((await session.execute(stmt)).scalars().all())

    async def overrides_for_subject(
        self,
        workspace_id: str,
        subject_type: str | SubjectType,
        subject_id: str,
    ) -> list[ResourceOverride]:
        """Every override granted to one user or group within a workspace."""
        stmt = (
            select(ResourceOverride)
            .where(
                ResourceOverride.workspace_id == workspace_id,
                ResourceOverride.subject_type == SubjectType(subject_type),
                ResourceOverride.subject_id == subject_id,
            )
            .order_by(ResourceOverride.resource_type, ResourceOverride.resource_id)
        )
        async with self._reading() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def _resolve(self, session: AsyncSession, resource_type: ResourceType, resource_id: str) -> str:
        workspace_id = await self.locator.resolve_workspace(session, resource_type, resource_id)
        if workspace_id is None:
            raise ResourceNotFound(resource_type.value, resource_id)
        return workspace_id

    @staticmethod
    async def _find(
        session: AsyncSession,
        resource_type: ResourceType,
        resource_id: str,
        subject_type: SubjectType,
        subject_id: str,
    ) -> Optional[ResourceOverride]:
        result = await session.execute(
            select(ResourceOverride).where(
                ResourceOverride.resource_type == resource_type,
                ResourceOverride.resource_id == resource_id,
                ResourceOverride.subject_type == subject_type,
                ResourceOverride.subject_id == subject_id,
            )
        )
        return result.scalar_one_or_none()
