"""Default role seeding."""
import pytest

from scripts.seed_permissions import DEFAULT_ROLES, seed_roles


pytestmark = pytest.mark.asyncio


async def test_seeded_roles_are_marked_default(service, world):
    custom = await service.create_role(world.workspace.id, "Finance", ["budget.view"], performed_by=world.owner.id)
    assert custom.is_default is False

    assert await seed_roles(service, world.workspace.id, world.owner.id) == len(DEFAULT_ROLES)
    assert await seed_roles(service, world.workspace.id, world.owner.id) == 0

    roles = {role.name: role for role, _ in await service.roles.list_roles(world.workspace.id)}
    assert {name for name, role in roles.items() if role.is_default} == set(DEFAULT_ROLES)
    assert roles["Finance"].is_default is False
    assert "admin.view_audit" in roles["Auditor"].permission_codes
