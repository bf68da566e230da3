"""
Static permission catalog and resource level ordering.

Permission codes form a closed set: every code the engine can grant or check
is declared here, and role grants are validated against it. The catalog is
mirrored into the ``permissions`` table by ``sync_permission_catalog`` so
grants can reference it with a foreign key.
"""
import enum
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions.errors import UnknownPermissionCode
from app.utils import get_logger


log = get_logger(__name__)


class PermissionCode(str, enum.Enum):
    """Every capability that can be granted through a custom role."""
    WORKSPACE_VIEW = "workspace.view"
    WORKSPACE_EDIT = "workspace.edit"
    WORKSPACE_DELETE = "workspace.delete"
    WORKSPACE_MANAGE_MEMBERS = "workspace.manage_members"
    WORKSPACE_MANAGE_ROLES = "workspace.manage_roles"

    BOARD_CREATE = "board.create"
    BOARD_VIEW = "board.view"
    BOARD_EDIT = "board.edit"
    BOARD_DELETE = "board.delete"
    BOARD_MANAGE_PERMISSIONS = "board.manage_permissions"

    ITEM_CREATE = "item.create"
    ITEM_VIEW = "item.view"
    ITEM_EDIT = "item.edit"
    ITEM_DELETE = "item.delete"
    ITEM_ASSIGN = "item.assign"

    PROJECT_CREATE = "project.create"
    PROJECT_VIEW = "project.view"
    PROJECT_EDIT = "project.edit"
    PROJECT_DELETE = "project.delete"
    PROJECT_MANAGE_TEAM = "project.manage_team"
    PROJECT_MANAGE_PHASES = "project.manage_phases"
    PROJECT_MANAGE_MILESTONES = "project.manage_milestones"
    PROJECT_MANAGE_RISKS = "project.manage_risks"
    PROJECT_MANAGE_BUDGET = "project.manage_budget"

    BUDGET_CREATE = "budget.create"
    BUDGET_VIEW = "budget.view"
    BUDGET_EDIT = "budget.edit"
    BUDGET_DELETE = "budget.delete"
    BUDGET_APPROVE_EXPENSES = "budget.approve_expenses"

    KPI_CREATE = "kpi.create"
    KPI_VIEW = "kpi.view"
    KPI_EDIT = "kpi.edit"
    KPI_DELETE = "kpi.delete"

    REPORT_VIEW = "report.view"
    REPORT_EXPORT = "report.export"

    ADMIN_VIEW_AUDIT = "admin.view_audit"
    ADMIN_MANAGE_ALL = "admin.manage_all"


@dataclass(frozen=True)
class PermissionDefinition:
    """Describes a catalog entry."""
    code: PermissionCode
    category: str
    name: str
    description: str


def _define(code: PermissionCode, category: str, name: str, description: str) -> PermissionDefinition:
    return PermissionDefinition(code=code, category=category, name=name, description=description)


PERMISSION_DEFINITIONS: tuple[PermissionDefinition, ...] = (
    # Workspace
    _define(PermissionCode.WORKSPACE_VIEW, "workspace", "View workspace", "See the workspace and its content"),
    _define(PermissionCode.WORKSPACE_EDIT, "workspace", "Edit workspace", "Change workspace settings"),
    _define(PermissionCode.WORKSPACE_DELETE, "workspace", "Delete workspace", "Delete the workspace"),
    _define(PermissionCode.WORKSPACE_MANAGE_MEMBERS, "workspace", "Manage members", "Invite and manage members"),
    _define(PermissionCode.WORKSPACE_MANAGE_ROLES, "workspace", "Manage roles", "Create and manage custom roles"),
    # Boards
    _define(PermissionCode.BOARD_CREATE, "board", "Create boards", "Create new boards"),
    _define(PermissionCode.BOARD_VIEW, "board", "View boards", "See boards"),
    _define(PermissionCode.BOARD_EDIT, "board", "Edit boards", "Change boards"),
    _define(PermissionCode.BOARD_DELETE, "board", "Delete boards", "Delete boards"),
    _define(PermissionCode.BOARD_MANAGE_PERMISSIONS, "board", "Manage board access", "Control who can access a board"),
    # Items
    _define(PermissionCode.ITEM_CREATE, "item", "Create items", "Create items"),
    _define(PermissionCode.ITEM_VIEW, "item", "View items", "See items"),
    _define(PermissionCode.ITEM_EDIT, "item", "Edit items", "Change items"),
    _define(PermissionCode.ITEM_DELETE, "item", "Delete items", "Delete items"),
    _define(PermissionCode.ITEM_ASSIGN, "item", "Assign items", "Assign items to users"),
    # Projects
    _define(PermissionCode.PROJECT_CREATE, "project", "Create projects", "Create projects"),
    _define(PermissionCode.PROJECT_VIEW, "project", "View projects", "See projects"),
    _define(PermissionCode.PROJECT_EDIT, "project", "Edit projects", "Change projects"),
    _define(PermissionCode.PROJECT_DELETE, "project", "Delete projects", "Delete projects"),
    _define(PermissionCode.PROJECT_MANAGE_TEAM, "project", "Manage project team", "Manage project members"),
    _define(PermissionCode.PROJECT_MANAGE_PHASES, "project", "Manage phases", "Create and change phases"),
    _define(PermissionCode.PROJECT_MANAGE_MILESTONES, "project", "Manage milestones", "Create and change milestones"),
    _define(PermissionCode.PROJECT_MANAGE_RISKS, "project", "Manage risks", "Create and change risks"),
    _define(PermissionCode.PROJECT_MANAGE_BUDGET, "project", "Manage project budget", "Manage the project budget"),
    # Budgets
    _define(PermissionCode.BUDGET_CREATE, "budget", "Create budgets", "Create budgets"),
    _define(PermissionCode.BUDGET_VIEW, "budget", "View budgets", "See budgets"),
    _define(PermissionCode.BUDGET_EDIT, "budget", "Edit budgets", "Change budgets"),
    _define(PermissionCode.BUDGET_DELETE, "budget", "Delete budgets", "Delete budgets"),
    _define(PermissionCode.BUDGET_APPROVE_EXPENSES, "budget", "Approve expenses", "Approve expenses"),
    # KPIs
    _define(PermissionCode.KPI_CREATE, "kpi", "Create KPIs", "Create indicators"),
    _define(PermissionCode.KPI_VIEW, "kpi", "View KPIs", "See indicators"),
    _define(PermissionCode.KPI_EDIT, "kpi", "Edit KPIs", "Change indicators"),
    _define(PermissionCode.KPI_DELETE, "kpi", "Delete KPIs", "Delete indicators"),
    # Reports
    _define(PermissionCode.REPORT_VIEW, "report", "View reports", "Consult reports"),
    _define(PermissionCode.REPORT_EXPORT, "report", "Export data", "Export data"),
    # Administration
    _define(PermissionCode.ADMIN_VIEW_AUDIT, "admin", "View audit", "Read the permission audit log"),
    _define(PermissionCode.ADMIN_MANAGE_ALL, "admin", "Full administration", "Full administrative access"),
)

PERMISSIONS_BY_CODE: dict[PermissionCode, PermissionDefinition] = {
    definition.code: definition for definition in PERMISSION_DEFINITIONS
}


class ResourceType(str, enum.Enum):
    """Resources that accept per-subject overrides."""
    BOARD = "board"
    PROJECT = "project"


class SubjectType(str, enum.Enum):
    """Who an override is granted to."""
    USER = "user"
    GROUP = "group"


class ResourceLevel(str, enum.Enum):
    """
    Access level on a single resource, ordered view < edit < admin.

    Comparison operators use ``rank`` so the ordering never falls back to
    string comparison.
    """
    VIEW = "view"
    EDIT = "edit"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return _LEVEL_RANKS[self]

    @classmethod
    def from_rank(cls, rank: int | None) -> "ResourceLevel | None":
        if not rank:
            return None
        return _LEVELS_BY_RANK[rank]

    def __lt__(self, other):
        if not isinstance(other, ResourceLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, ResourceLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, ResourceLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, ResourceLevel):
            return NotImplemented
        return self.rank >= other.rank


_LEVEL_RANKS = {ResourceLevel.VIEW: 1, ResourceLevel.EDIT: 2, ResourceLevel.ADMIN: 3}
_LEVELS_BY_RANK = {rank: level for level, rank in _LEVEL_RANKS.items()}


def collect_permission_codes(values: Iterable[str | PermissionCode]) -> frozenset[PermissionCode]:
    """
    Normalise requested codes against the catalog.

    Raises:
        UnknownPermissionCode: if any value is not a catalogued code
    """
    codes: set[PermissionCode] = set()
    unknown: list[str] = []
    for value in values:
        if isinstance(value, PermissionCode):
            codes.add(value)
            continue
        try:
            codes.add(PermissionCode(str(value).strip()))
        except ValueError:
            unknown.append(str(value))
    if unknown:
        raise UnknownPermissionCode(unknown)
    return frozenset(codes)


def list_catalog() -> dict[str, list[PermissionDefinition]]:
    """Return the catalog grouped by category, in declaration order."""
    grouped: dict[str, list[PermissionDefinition]] = {}
    for definition in PERMISSION_DEFINITIONS:
        grouped.setdefault(definition.category, []).append(definition)
    return grouped


async def sync_permission_catalog(session: AsyncSession) -> int:
    """
    Insert catalog entries missing from the ``permissions`` table.

    Existing rows are left untouched; permissions are immutable once created.
    Returns the number of rows inserted.
    """
    from app.features.permissions.models import Permission

    result = await session.execute(select(Permission.code))
    existing = set(result.scalars().all())

    created = 0
    for definition in PERMISSION_DEFINITIONS:
        if definition.code.value in existing:
            continue
        session.add(Permission(
            code=definition.code.value,
            name=definition.name,
            description=definition.description,
            category=definition.category,
        ))
        created += 1

    if created:
        await session.flush()
        log.info("Synced %s permission(s) into the catalog", created)
    return created
