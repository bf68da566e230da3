"""
Audit trail for permission-affecting changes.

Entries are written after the triggering transaction has committed, in a
session of their own. A failed write is logged and swallowed: audit
completeness is best-effort and never rolls back or fails the mutation.
"""
import enum
from typing import Any, Dict, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.features.permissions.errors import StorageError
from app.features.permissions.models import AuditLog
from app.utils import get_logger


log = get_logger(__name__)


class AuditAction(str, enum.Enum):
    ROLE_CREATED = "role_created"
    ROLE_UPDATED = "role_updated"
    ROLE_DELETED = "role_deleted"
    ROLE_ASSIGNED = "role_assigned"
    ROLE_REMOVED = "role_removed"
    GROUP_CREATED = "group_created"
    GROUP_UPDATED = "group_updated"
    GROUP_DELETED = "group_deleted"
    GROUP_MEMBER_ADDED = "group_member_added"
    GROUP_MEMBER_REMOVED = "group_member_removed"
    OVERRIDE_SET = "override_set"
    OVERRIDE_REMOVED = "override_removed"
    MEMBER_ADDED = "member_added"
    MEMBER_ROLE_CHANGED = "member_role_changed"
    MEMBER_REMOVED = "member_removed"
    OWNERSHIP_TRANSFERRED = "ownership_transferred"


class AuditEntity(str, enum.Enum):
    ROLE = "role"
    USER_ROLE = "user_role"
    GROUP = "group"
    GROUP_MEMBER = "group_member"
    RESOURCE_OVERRIDE = "resource_override"
    MEMBERSHIP = "membership"
    WORKSPACE = "workspace"


class AuditLogger:
    """Append-only writer and paged reader for ``permission_audit_logs``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def append(
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
    ) -> Optional[AuditLog]:
        """
        Record one change. Returns the entry, or None if the write failed.
        """
        entry = AuditLog(
            workspace_id=workspace_id,
            action=action.value,
            entity_type=entity_type.value,
            entity_id=entity_id,
            performed_by=performed_by,
            target_user_id=target_user_id,
            old_value=jsonable_encoder(old_value) if old_value is not None else None,
            new_value=jsonable_encoder(new_value) if new_value is not None else None,
        )
        try:
            async with self._sessions.begin() as session:
                session.add(entry)
        except SQLAlchemyError as exc:
            log.warning(
                "Audit write failed: action=%s entity=%s:%s workspace=%s error=%s",
                action.value, entity_type.value, entity_id, workspace_id, exc,
            )
            return None

        log.info(
            "Audit: user=%s action=%s entity=%s:%s workspace=%s",
            performed_by, action.value, entity_type.value, entity_id, workspace_id,
        )
        return entry

    async def list_entries(
        self,
        workspace_id: str,
        *,
        skip: int = 0,
        limit: int = 50,
        action: Optional[str] = None,
        entity_type: Optional[str] = None,
    ) -> tuple[list[AuditLog], int]:
        """Return one page of a workspace's entries, newest first, and the total."""
        stmt = select(AuditLog).where(AuditLog.workspace_id == workspace_id)
        if action:
            stmt = stmt.where(AuditLog.action == action)
        if entity_type:
            stmt = stmt.where(AuditLog.entity_type == entity_type)

        try:
            async with self._sessions() as session:
                count_stmt = select(func.count()).select_from(stmt.subquery())
                total = (await session.execute(count_stmt)).scalar() or 0

                page = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(skip).limit(limit)
                entries = list((await session.execute(page)).scalars().all())
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not read audit log: {exc}") from exc

        return entries, total
