"""
Seed script to populate the permission catalog and default roles.

Run this script to:
- Create the database tables
- Insert every catalog permission missing from the ``permissions`` table
- Optionally create the default custom roles in one workspace

Usage:
    uv run python -m scripts.seed_permissions
    uv run python -m scripts.seed_permissions <workspace_id> <owner_user_id>
"""
import asyncio
import sys

from app.core.database.engine import AsyncSessionLocal, init_db
from app.features.permissions.catalog import PermissionCode
from app.features.permissions.errors import DuplicateRoleName
from app.features.permissions.service import PermissionService
from app.utils import get_logger


log = get_logger(__name__)


DEFAULT_ROLES = {
    "Editor": {
        "description": "Creates and edits boards, items and projects",
        "color": "#22c55e",
        "permissions": [
            PermissionCode.WORKSPACE_VIEW,
            PermissionCode.BOARD_CREATE, PermissionCode.BOARD_VIEW, PermissionCode.BOARD_EDIT,
            PermissionCode.ITEM_CREATE, PermissionCode.ITEM_VIEW, PermissionCode.ITEM_EDIT,
            PermissionCode.ITEM_DELETE, PermissionCode.ITEM_ASSIGN,
            PermissionCode.PROJECT_VIEW, PermissionCode.PROJECT_EDIT,
            PermissionCode.REPORT_VIEW,
        ],
    },
    "Project Manager": {
        "description": "Runs projects end to end, including budgets and KPIs",
        "color": "#f59e0b",
        "permissions": [
            PermissionCode.WORKSPACE_VIEW,
            PermissionCode.PROJECT_CREATE, PermissionCode.PROJECT_VIEW, PermissionCode.PROJECT_EDIT,
            PermissionCode.PROJECT_MANAGE_TEAM, PermissionCode.PROJECT_MANAGE_PHASES,
            PermissionCode.PROJECT_MANAGE_MILESTONES, PermissionCode.PROJECT_MANAGE_RISKS,
            PermissionCode.PROJECT_MANAGE_BUDGET,
            PermissionCode.BUDGET_VIEW, PermissionCode.BUDGET_EDIT, PermissionCode.BUDGET_APPROVE_EXPENSES,
            PermissionCode.KPI_CREATE, PermissionCode.KPI_VIEW, PermissionCode.KPI_EDIT,
            PermissionCode.REPORT_VIEW, PermissionCode.REPORT_EXPORT,
        ],
    },
    "Auditor": {
        "description": "Read-only access plus the audit log",
        "color": "#64748b",
        "permissions": [
            PermissionCode.WORKSPACE_VIEW,
            PermissionCode.BOARD_VIEW, PermissionCode.ITEM_VIEW, PermissionCode.PROJECT_VIEW,
            PermissionCode.BUDGET_VIEW, PermissionCode.KPI_VIEW, PermissionCode.REPORT_VIEW,
            PermissionCode.ADMIN_VIEW_AUDIT,
        ],
    },
}


async def seed_roles(service: PermissionService, workspace_id: str, performed_by: str) -> int:
    """
    Create the default roles in a workspace, skipping names already taken.

    Returns:
        Number of roles created
    """
    created = 0
    for name, template in DEFAULT_ROLES.items():
        try:
            await service.create_role(
                workspace_id,
                name,
                template["permissions"],
                performed_by=performed_by,
                description=template["description"],
                color=template["color"],
                is_default=True,
            )
        except DuplicateRoleName:
            log.debug("Role '%s' already exists, skipping", name)
            continue
        created += 1
    return created


async def main(argv: list[str]) -> None:
    log.info("Initializing database and permission catalog...")
    await init_db()

    if len(argv) >= 2:
        workspace_id, owner_id = argv[0], argv[1]
        service = PermissionService(AsyncSessionLocal)
        created = await seed_roles(service, workspace_id, owner_id)
        log.info("Created %s default role(s) in workspace %s", created, workspace_id)

    log.info("Seeding complete")


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1:]))
