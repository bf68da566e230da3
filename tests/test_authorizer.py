"""Decision engine tests."""
import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from app.features.permissions.authorizer import Authorizer, DecisionReason
from app.features.permissions.catalog import PermissionCode, ResourceLevel, ResourceType, SubjectType
from app.features.permissions.errors import (
    EvaluationTimeout,
    ResourceNotFound,
    StorageError,
    UnknownPermissionCode,
)


pytestmark = pytest.mark.asyncio


@pytest.mark.parametrize("principal", ["owner", "admin"])
async def test_owner_and_admin_bypass_every_check(service, world, principal):
    user = getattr(world, principal)
    for code in PermissionCode:
        decision = await service.decide_workspace(user.id, world.workspace.id, code)
        assert decision.allowed
        assert decision.reason is DecisionReason.ROLE_BYPASS
    for level in ResourceLevel:
        decision = await service.decide_resource(user.id, ResourceType.BOARD, world.board.id, level)
        assert decision.allowed
        assert decision.effective_level is ResourceLevel.ADMIN


async def test_plain_member_is_denied(service, world):
    decision = await service.decide_workspace(world.member.id, world.workspace.id, "admin.manage_all")
    assert not decision
    assert decision.reason is DecisionReason.NO_PERMISSION


async def test_non_member_is_denied(service, world):
    decision = await service.decide_workspace(world.outsider.id, world.workspace.id, "workspace.view")
    assert not decision.allowed
    assert decision.reason is DecisionReason.NOT_MEMBER


async def test_custom_role_grants_until_removed(service, world):
    role = await service.create_role(
        world.workspace.id, "Budget Editor", ["budget.edit"], performed_by=world.owner.id,
    )
    await service.assign_role(world.member.id, world.workspace.id, role.id, performed_by=world.owner.id)

    decision = await service.decide_workspace(world.member.id, world.workspace.id, "budget.edit")
    assert decision.allowed
    assert decision.reason is DecisionReason.CUSTOM_ROLE

    await service.remove_role(world.member.id, world.workspace.id, role.id, performed_by=world.owner.id)
    assert not await service.check_workspace_permission(world.member.id, world.workspace.id, "budget.edit")


async def test_union_of_assigned_roles(service, world):
    reader = await service.create_role(world.workspace.id, "Reader", ["report.view"], performed_by=world.owner.id)
    exporter = await service.create_role(world.workspace.id, "Exporter", ["report.export"], performed_by=world.owner.id)
    for role in (reader, exporter):
        await service.assign_role(world.member.id, world.workspace.id, role.id, performed_by=world.owner.id)

    assert await service.check_workspace_permission(world.member.id, world.workspace.id, "report.view")
    assert await service.check_workspace_permission(world.member.id, world.workspace.id, "report.export")
    assert not await service.check_workspace_permission(world.member.id, world.workspace.id, "kpi.view")


async def test_deleting_role_revokes_its_grants(service, world):
    role = await service.create_role(world.workspace.id, "KPI", ["kpi.edit"], performed_by=world.owner.id)
    await service.assign_role(world.member.id, world.workspace.id, role.id, performed_by=world.owner.id)
    await service.assign_role(world.teammate.id, world.workspace.id, role.id, performed_by=world.owner.id)

    await service.delete_role(role.id, performed_by=world.owner.id)

    for user in (world.member, world.teammate):
        assert not await service.check_workspace_permission(user.id, world.workspace.id, "kpi.edit")
    assert await service.roles.list_assignments(world.workspace.id, world.member.id) == []


async def test_user_override_levels(service, world):
    await service.set_override(
        ResourceType.BOARD, world.board.id, SubjectType.USER, world.member.id, "edit",
        performed_by=world.owner.id,
    )

    assert await service.check_resource_permission(world.member.id, "board", world.board.id, "view")
    assert await service.check_resource_permission(world.member.id, "board", world.board.id, "edit")
    assert not await service.check_resource_permission(world.member.id, "board", world.board.id, "admin")

    decision = await service.decide_resource(world.member.id, "board", world.board.id, "admin")
    assert decision.reason is DecisionReason.INSUFFICIENT_LEVEL
    assert decision.effective_level is ResourceLevel.EDIT


async def test_most_permissive_group_wins(service, world):
    readers = await service.create_group(
        world.workspace.id, "Readers", performed_by=world.owner.id, member_ids=[world.member.id],
    )
    leads = await service.create_group(
        world.workspace.id, "Leads", performed_by=world.owner.id, member_ids=[world.member.id],
    )
    await service.set_override("board", world.board.id, "group", readers.id, "view", performed_by=world.owner.id)
    await service.set_override("board", world.board.id, "group", leads.id, "admin", performed_by=world.owner.id)

    decision = await service.decide_resource(world.member.id, "board", world.board.id, "admin")
    assert decision.allowed
    assert decision.reason is DecisionReason.RESOURCE_OVERRIDE
    assert decision.effective_level is ResourceLevel.ADMIN


async def test_group_beats_lower_direct_override(service, world):
    editors = await service.create_group(
        world.workspace.id, "Editors", performed_by=world.owner.id, member_ids=[world.member.id],
    )
    await service.set_override("project", world.project.id, "user", world.member.id, "view", performed_by=world.owner.id)
    await service.set_override("project", world.project.id, "group", editors.id, "edit", performed_by=world.owner.id)

    decision = await service.decide_resource(world.member.id, "project", world.project.id, "edit")
    assert decision.allowed
    assert decision.effective_level is ResourceLevel.EDIT


async def test_override_on_one_resource_does_not_leak(service, world):
    await service.set_override("board", world.board.id, "user", world.member.id, "admin", performed_by=world.owner.id)

    decision = await service.decide_resource(world.member.id, "project", world.project.id, "view")
    assert not decision.allowed
    assert decision.effective_level is None


async def test_unknown_resource_raises(service, world):
    with pytest.raises(ResourceNotFound):
        await service.decide_resource(world.member.id, "board", "01UNKNOWNBOARD000000000000", "view")


async def test_unknown_permission_code_raises(service, world):
    with pytest.raises(UnknownPermissionCode):
        await service.decide_workspace(world.member.id, world.workspace.id, "board.fly")


async def test_budget_manager_scenario(service, world):
    role = await service.create_role(
        world.workspace.id, "Budget Manager", ["budget.edit"], performed_by=world.owner.id,
    )
    await service.assign_role(world.member.id, world.workspace.id, role.id, performed_by=world.owner.id)

    assert await service.check_workspace_permission(world.member.id, world.workspace.id, "budget.edit")
    assert not await service.check_workspace_permission(world.member.id, world.workspace.id, "project.delete")
    assert await service.check_workspace_permission(world.owner.id, world.workspace.id, "project.delete")


async def test_summary_lists_effective_access(service, world):
    role = await service.create_role(world.workspace.id, "Planner", ["kpi.view", "kpi.edit"], performed_by=world.owner.id)
    await service.assign_role(world.member.id, world.workspace.id, role.id, performed_by=world.owner.id)
    await service.set_override("board", world.board.id, "user", world.member.id, "view", performed_by=world.owner.id)

    summary = await service.get_principal_permissions(world.member.id, world.workspace.id)
    assert summary.membership_role.value == "member"
    assert [r.name for r in summary.roles] == ["Planner"]
    assert summary.permissions == ["kpi.edit", "kpi.view"]
    assert [(o.resource_id, o.level) for o in summary.overrides] == [(world.board.id, ResourceLevel.VIEW)]

    owner_summary = await service.get_principal_permissions(world.owner.id, world.workspace.id)
    assert len(owner_summary.permissions) == len(PermissionCode)


async def test_timeout_is_an_error_not_a_deny(sessions, world):
    class SlowLocator:
        async def resolve_workspace(self, session, resource_type, resource_id):
            await asyncio.sleep(1)
            return world.workspace.id

    authorizer = Authorizer(sessions, locator=SlowLocator(), timeout=0.01)
    with pytest.raises(EvaluationTimeout):
        await authorizer.decide_resource(world.member.id, "board", world.board.id, "view")


async def test_zero_timeout_lifts_the_bound(sessions, world):
    class SlowLocator:
        async def resolve_workspace(self, session, resource_type, resource_id):
            await asyncio.sleep(0.05)
            return world.workspace.id

    authorizer = Authorizer(sessions, locator=SlowLocator(), timeout=0.01)
    decision = await authorizer.decide_resource(world.member.id, "board", world.board.id, "view", timeout=0)
    assert not decision.allowed

    unbounded = Authorizer(sessions, locator=SlowLocator(), timeout=0)
    assert not await unbounded.decide_resource(world.member.id, "board", world.board.id, "view")


async def test_cancellation_propagates(sessions, world):
    started = asyncio.Event()

    class BlockingLocator:
        async def resolve_workspace(self, session, resource_type, resource_id):
            started.set()
            await asyncio.sleep(10)

    authorizer = Authorizer(sessions, locator=BlockingLocator(), timeout=0)
    task = asyncio.create_task(authorizer.decide_resource(world.member.id, "board", world.board.id, "view"))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


async def test_storage_failure_is_an_error_not_a_deny(sessions, world):
    class BrokenLocator:
        async def resolve_workspace(self, session, resource_type, resource_id):
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    authorizer = Authorizer(sessions, locator=BrokenLocator())
    with pytest.raises(StorageError):
        await authorizer.decide_resource(world.member.id, "board", world.board.id, "view")


async def test_concurrent_decisions_agree(service, world):
    await service.set_override("board", world.board.id, "user", world.member.id, "edit", performed_by=world.owner.id)

    decisions = await asyncio.gather(*[
        service.decide_resource(world.member.id, "board", world.board.id, "edit")
        for _ in range(20)
    ])
    assert all(decision.allowed for decision in decisions)
