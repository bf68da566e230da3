"""
Permission decision engine.

Two questions are answered here:

* may a principal use a permission code in a workspace
  (membership role, then custom roles), and
* may a principal act on a board or project at a given level
  (membership role, then the highest of the direct and group overrides).

Each decision reads its inputs with a single SQL statement so it sees one
consistent snapshot regardless of the backend's isolation level. Denials are
returned as ``Decision`` values; exceptions mean the question could not be
answered.
"""
import asyncio
import enum
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, case, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import config
from app.features.permissions.cache import PermissionCache
from app.features.permissions.catalog import (
    PermissionCode,
    ResourceLevel,
    ResourceType,
    SubjectType,
    collect_permission_codes,
)
from app.features.permissions.errors import EvaluationTimeout, ResourceNotFound, StorageError
from app.features.permissions.models import (
    Group,
    ResourceOverride,
    RoleAssignment,
    group_members,
    role_permissions,
)
from app.features.permissions.resources import ResourceLocator, TableResourceLocator
from app.features.workspaces.models import MemberRole, WorkspaceMember
from app.utils import get_logger


log = get_logger(__name__)


class DecisionReason(str, enum.Enum):
    ROLE_BYPASS = "role_bypass"
    CUSTOM_ROLE = "custom_role"
    RESOURCE_OVERRIDE = "resource_override"
    NOT_MEMBER = "not_member"
    NO_PERMISSION = "no_permission"
    INSUFFICIENT_LEVEL = "insufficient_level"


@dataclass(frozen=True)
class Decision:
    """Outcome of a permission check. Truthy iff allowed."""
    allowed: bool
    reason: DecisionReason
    effective_level: Optional[ResourceLevel] = None

    def __bool__(self) -> bool:
        return self.allowed

    @classmethod
    def allow(cls, reason: DecisionReason, effective_level: Optional[ResourceLevel] = None) -> "Decision":
        return cls(True, reason, effective_level)

    @classmethod
    def deny(cls, reason: DecisionReason, effective_level: Optional[ResourceLevel] = None) -> "Decision":
        return cls(False, reason, effective_level)


def _level_rank():
    return case(
        {level: level.rank for level in ResourceLevel},
        value=ResourceOverride.level,
        else_=0,
    )


def _member_role_subquery(principal_id: str, workspace_id: str):
    return (
        select(WorkspaceMember.role)
        .where(
            WorkspaceMember.workspace_id == workspace_id,
            WorkspaceMember.user_id == principal_id,
        )
        .scalar_subquery()
    )


def principal_groups_subquery(principal_id: str, workspace_id: str):
    """IDs of the principal's groups in one workspace."""
    return (
        select(group_members.c.group_id)
        .join(Group, Group.id == group_members.c.group_id)
        .where(
            group_members.c.user_id == principal_id,
            Group.workspace_id == workspace_id,
        )
    )


def _coerce_role(value) -> Optional[MemberRole]:
    return MemberRole(value) if value is not None else None


class Authorizer:
    """
    Answers workspace and resource permission checks.

    Decisions are memoised in ``cache`` when one is given; the stores
    invalidate it after every committed write.

    ``timeout`` bounds each decision in seconds and defaults to
    ``PERMISSION_CHECK_TIMEOUT``; ``0`` means no bound.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locator: Optional[ResourceLocator] = None,
        cache: Optional[PermissionCache] = None,
        timeout: Optional[float] = None,
    ):
        self._sessions = session_factory
        self.locator = locator or TableResourceLocator()
        self.cache = cache
        self.timeout = config.PERMISSION_CHECK_TIMEOUT if timeout is None else timeout

    # ------------------------------------------------------------------
    # Workspace-level decisions
    # ------------------------------------------------------------------

    async def decide_workspace(
        self,
        principal_id: str,
        workspace_id: str,
        permission_code: str | PermissionCode,
        *,
        timeout: Optional[float] = None,
    ) -> Decision:
        """
        Decide whether the principal holds ``permission_code`` in the workspace.

        ``timeout`` overrides the authorizer's bound for this call; ``None``
        keeps it and ``0`` lifts it.

        Raises:
            EvaluationTimeout: the bound expired before a decision was reached
            StorageError: the store could not be read
        """
        (code,) = collect_permission_codes([permission_code])
        scope = ("permission", code.value)

        generation = 0
        if self.cache is not None:
            generation = self.cache.generation(workspace_id)
            cached = self.cache.get(workspace_id, principal_id, scope)
            if cached is not None:
                return cached

        decision = await self._bounded(
            self._evaluate_workspace(principal_id, workspace_id, code),
            timeout,
        )

        if self.cache is not None:
            self.cache.put(workspace_id, principal_id, scope, decision, generation)
        log.debug(
            "Workspace decision user=%s workspace=%s code=%s -> %s (%s)",
            principal_id, workspace_id, code.value, decision.allowed, decision.reason.value,
        )
        return decision

    async def _evaluate_workspace(
        self,
        principal_id: str,
        workspace_id: str,
        code: PermissionCode,
    ) -> Decision:
        granted = (
            select(role_permissions.c.role_id)
            .join(RoleAssignment, RoleAssignment.role_id == role_permissions.c.role_id)
            .where(
                RoleAssignment.workspace_id == workspace_id,
                RoleAssignment.user_id == principal_id,
                role_permissions.c.permission_code == code.value,
            )
            .exists()
        )
        stmt = select(
            _member_role_subquery(principal_id, workspace_id).label("member_role"),
            granted.label("granted"),
        )

        async with self._read_session() as session:
            row = (await session.execute(stmt)).one()

        role = _coerce_role(row.member_role)
        if role is None:
            return Decision.deny(DecisionReason.NOT_MEMBER)
        if role.bypasses_checks:
            return Decision.allow(DecisionReason.ROLE_BYPASS)
        if row.granted:
            return Decision.allow(DecisionReason.CUSTOM_ROLE)
        return Decision.deny(DecisionReason.NO_PERMISSION)

    # ------------------------------------------------------------------
    # Resource-level decisions
    # ------------------------------------------------------------------

    async def decide_resource(
        self,
        principal_id: str,
        resource_type: str | ResourceType,
        resource_id: str,
        required_level: str | ResourceLevel,
        *,
        timeout: Optional[float] = None,
    ) -> Decision:
        """
        Decide whether the principal holds at least ``required_level`` on the
        resource. ``timeout`` behaves as in ``decide_workspace``.
        """
        resource_type = ResourceType(resource_type)
        required_level = ResourceLevel(required_level)
        return await self._bounded(
            self._decide_resource(principal_id, resource_type, resource_id, required_level),
            timeout,
        )

    async def _decide_resource(
        self,
        principal_id: str,
        resource_type: ResourceType,
        resource_id: str,
        required_level: ResourceLevel,
    ) -> Decision:
        async with self._read_session() as session:
            workspace_id = await self.locator.resolve_workspace(session, resource_type, resource_id)
            if workspace_id is None:
                raise ResourceNotFound(resource_type.value, resource_id)

            scope = ("resource", resource_type.value, resource_id, required_level.value)
            generation = 0
            if self.cache is not None:
                generation = self.cache.generation(workspace_id)
                cached = self.cache.get(workspace_id, principal_id, scope)
                if cached is not None:
                    return cached

            decision = await self._evaluate_resource(
                session, principal_id, workspace_id, resource_type, resource_id, required_level,
            )

        if self.cache is not None:
            self.cache.put(workspace_id, principal_id, scope, decision, generation)
        log.debug(
            "Resource decision user=%s %s:%s required=%s -> %s (%s)",
            principal_id, resource_type.value, resource_id, required_level.value,
            decision.allowed, decision.reason.value,
        )
        return decision

    async def _evaluate_resource(
        self,
        session: AsyncSession,
        principal_id: str,
        workspace_id: str,
        resource_type: ResourceType,
        resource_id: str,
        required_level: ResourceLevel,
    ) -> Decision:
        on_resource = (
            ResourceOverride.resource_type == resource_type,
            ResourceOverride.resource_id == resource_id,
        )
        direct_rank = (
            select(func.max(_level_rank()))
            .where(
                *on_resource,
                ResourceOverride.subject_type == SubjectType.USER,
                ResourceOverride.subject_id == principal_id,
            )
            .scalar_subquery()
        )
        group_rank = (
            select(func.max(_level_rank()))
            .where(
                *on_resource,
                ResourceOverride.subject_type == SubjectType.GROUP,
                ResourceOverride.subject_id.in_(principal_groups_subquery(principal_id, workspace_id)),
            )
            .scalar_subquery()
        )
        stmt = select(
            _member_role_subquery(principal_id, workspace_id).label("member_role"),
            direct_rank.label("direct_rank"),
            group_rank.label("group_rank"),
        )
        row = (await session.execute(stmt)).one()

        role = _coerce_role(row.member_role)
        if role is not None and role.bypasses_checks:
            return Decision.allow(DecisionReason.ROLE_BYPASS, ResourceLevel.ADMIN)

        # Most permissive grant wins across the direct override and every group.
        effective = ResourceLevel.from_rank(max(row.direct_rank or 0, row.group_rank or 0))
        if effective is not None and effective >= required_level:
            return Decision.allow(DecisionReason.RESOURCE_OVERRIDE, effective)
        return Decision.deny(DecisionReason.INSUFFICIENT_LEVEL, effective)

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    async def permission_codes_for(
        self,
        principal_id: str,
        workspace_id: str,
    ) -> tuple[Optional[MemberRole], frozenset[PermissionCode]]:
        """
        Membership role and effective permission codes of a principal.

        Owners and admins hold the whole catalog; non-members hold nothing.
        """
        codes = (
            select(role_permissions.c.permission_code)
            .join(RoleAssignment, RoleAssignment.role_id == role_permissions.c.role_id)
            .where(
                RoleAssignment.workspace_id == workspace_id,
                RoleAssignment.user_id == principal_id,
            )
            .distinct()
        )
        async with self._read_session() as session:
            role = _coerce_role(
                (await session.execute(select(_member_role_subquery(principal_id, workspace_id)))).scalar()
            )
            granted = (await session.execute(codes)).scalars().all()

        if role is None:
            return None, frozenset()
        if role.bypasses_checks:
            return role, frozenset(PermissionCode)
        return role, frozenset(PermissionCode(code) for code in granted)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _bounded(self, coro, timeout: Optional[float]):
        limit = self.timeout if timeout is None else timeout
        try:
            # 0 disables the bound
            async with asyncio.timeout(limit or None):
                return await coro
        except TimeoutError as exc:
            raise EvaluationTimeout(limit) from exc

    @asynccontextmanager
    async def _read_session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessions() as session:
                yield session
        except SQLAlchemyError as exc:
            raise StorageError(f"Permission store unavailable: {exc}") from exc
