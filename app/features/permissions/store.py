"""
Shared plumbing for the workspace-scoped stores.

Every administrative mutation follows the same sequence: one transaction,
then invalidation of the workspace's cached decisions, then a best-effort
audit entry.
"""
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.features.permissions.audit import AuditAction, AuditEntity, AuditLogger
from app.features.permissions.cache import PermissionCache
from app.features.permissions.errors import (
    ConflictError,
    NotWorkspaceMember,
    StorageError,
    WorkspaceNotFound,
)
from app.features.workspaces.models import Workspace, WorkspaceMember


DEFAULT_COLOR = "#6366f1"


class WorkspaceStore:
    """Base class wiring a session factory, the audit logger and the cache."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit: AuditLogger,
        cache: Optional[PermissionCache] = None,
    ):
        self._sessions = session_factory
        self.audit = audit
        self.cache = cache

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        """All-or-nothing unit of work; driver failures surface as StorageError."""
        try:
            async with self._sessions.begin() as session:
                yield session
        except SQLAlchemyError as exc:
            raise StorageError(f"Permission store write failed: {exc}") from exc

    @asynccontextmanager
    async def _reading(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessions() as session:
                yield session
        except SQLAlchemyError as exc:
            raise StorageError(f"Permission store unavailable: {exc}") from exc

    async def _committed(
        self,
        workspace_id: str,
        action: AuditAction,
        entity_type: AuditEntity,
        entity_id: Optional[str],
        *,
        performed_by: Optional[str],
        target_user_id: Optional[str] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Run the post-commit side effects of a mutation."""
        if self.cache is not None:
            self.cache.invalidate_workspace(workspace_id)
        await self.audit.append(
            workspace_id,
            action,
            entity_type,
            entity_id,
            performed_by=performed_by,
            target_user_id=target_user_id,
            old_value=old_value,
            new_value=new_value,
        )

    @staticmethod
    async def _flush(session: AsyncSession, conflict: Exception) -> None:
        """Flush, turning a unique-constraint race into ``conflict``."""
        try:
            await session.flush()
        except IntegrityError as exc:
            raise conflict from exc

    @staticmethod
    async def _require_workspace(session: AsyncSession, workspace_id: str) -> Workspace:
        workspace = await session.get(Workspace, workspace_id)
        if workspace is None:
            raise WorkspaceNotFound(workspace_id)
        return workspace

    @staticmethod
    async def _membership(session: AsyncSession, workspace_id: str, user_id: str) -> Optional[WorkspaceMember]:
        result = await session.execute(
            select(WorkspaceMember).where(
                WorkspaceMember.workspace_id == workspace_id,
                WorkspaceMember.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def _require_member(self, session: AsyncSession, workspace_id: str, user_id: str) -> WorkspaceMember:
        member = await self._membership(session, workspace_id, user_id)
        if member is None:
            raise NotWorkspaceMember(user_id, workspace_id)
        return member


def concurrent_change(what: str) -> ConflictError:
    return ConflictError(f"{what} was changed concurrently; retry the request")
