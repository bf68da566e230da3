"""Role, group and override store tests, including their audit trail."""
import pytest
from sqlalchemy import delete, func, select

from app.features.permissions.audit import AuditAction, AuditEntity
from app.features.permissions.errors import (
    CannotDeleteProtectedRole,
    DuplicateGroupName,
    DuplicateRoleName,
    GroupNotFound,
    NotWorkspaceMember,
    ResourceNotFound,
    RoleNotFound,
    StorageError,
    UnknownPermissionCode,
)
from app.features.permissions.models import Permission, ResourceOverride, RoleAssignment
from app.features.permissions.service import PermissionService


pytestmark = pytest.mark.asyncio


async def _count(sessions, stmt) -> int:
    async with sessions() as session:
        return (await session.execute(stmt)).scalar()


# Roles -------------------------------------------------------------------

async def test_create_role_is_audited(service, world, audit_entries):
    role = await service.create_role(
        world.workspace.id, "Finance", ["budget.view", "budget.edit"],
        performed_by=world.owner.id, description="Money matters",
    )

    assert role.permission_codes == ["budget.edit", "budget.view"]
    assert role.color == "#6366f1"

    entries = await audit_entries(world.workspace.id, action=AuditAction.ROLE_CREATED.value)
    assert len(entries) == 1
    assert entries[0].entity_id == role.id
    assert entries[0].performed_by == world.owner.id
    assert entries[0].old_value is None
    assert entries[0].new_value["permissions"] == ["budget.edit", "budget.view"]


async def test_create_role_rejects_duplicates_and_unknown_codes(service, world):
    await service.create_role(world.workspace.id, "Finance", [], performed_by=world.owner.id)

    with pytest.raises(DuplicateRoleName):
        await service.create_role(world.workspace.id, "Finance", [], performed_by=world.owner.id)
    with pytest.raises(UnknownPermissionCode) as excinfo:
        await service.create_role(world.workspace.id, "Other", ["budget.edit", "nope"], performed_by=world.owner.id)
    assert excinfo.value.codes == ["nope"]


async def test_same_role_name_in_two_workspaces(service, world):
    await service.create_role(world.workspace.id, "Finance", [], performed_by=world.owner.id)
    role = await service.create_role(world.other_workspace.id, "Finance", [], performed_by=world.outsider.id)
    assert role.workspace_id == world.other_workspace.id


@pytest.mark.parametrize("name", ["owner", "Admin", " viewer "])
async def test_builtin_role_names_are_reserved(service, world, name):
    with pytest.raises(CannotDeleteProtectedRole):
        await service.create_role(world.workspace.id, name, [], performed_by=world.owner.id)


async def test_update_role_replaces_grants(service, world, audit_entries):
    role = await service.create_role(
        world.workspace.id, "Ops", ["board.view", "board.edit"], performed_by=world.owner.id,
    )

    updated = await service.update_role(
        role.id, performed_by=world.admin.id, name="Operations", permission_codes=["item.view"],
    )

    assert updated.name == "Operations"
    assert updated.permission_codes == ["item.view"]
    [entry] = await audit_entries(world.workspace.id, action=AuditAction.ROLE_UPDATED.value)
    assert entry.performed_by == world.admin.id
    assert entry.old_value["name"] == "Ops"
    assert entry.old_value["permissions"] == ["board.edit", "board.view"]
    assert entry.new_value["name"] == "Operations"
    assert entry.new_value["permissions"] == ["item.view"]


async def test_update_role_without_changes_writes_no_audit(service, world, audit_entries):
    role = await service.create_role(world.workspace.id, "Ops", ["board.view"], performed_by=world.owner.id)
    await service.update_role(role.id, performed_by=world.owner.id, permission_codes=["board.view"])
    assert await audit_entries(world.workspace.id, action=AuditAction.ROLE_UPDATED.value) == []


async def test_failed_grant_write_leaves_no_partial_role(service, sessions, world, audit_entries):
    role = await service.create_role(world.workspace.id, "Finance", ["budget.view"], performed_by=world.owner.id)
    async with sessions.begin() as session:
        await session.execute(delete(Permission).where(Permission.code == "kpi.view"))

    with pytest.raises(StorageError):
        await service.create_role(
            world.workspace.id, "Metrics", ["budget.edit", "kpi.view"], performed_by=world.owner.id,
        )
    with pytest.raises(StorageError):
        await service.update_role(role.id, performed_by=world.owner.id, name="Money", permission_codes=["kpi.view"])

    roles = await service.roles.list_roles(world.workspace.id)
    assert [(r.name, r.permission_codes) for r, _ in roles] == [("Finance", ["budget.view"])]
    assert len(await audit_entries(world.workspace.id, action=AuditAction.ROLE_CREATED.value)) == 1
    assert await audit_entries(world.workspace.id, action=AuditAction.ROLE_UPDATED.value) == []


async def test_rename_onto_existing_role_conflicts(service, world):
    await service.create_role(world.workspace.id, "Ops", [], performed_by=world.owner.id)
    role = await service.create_role(world.workspace.id, "Dev", [], performed_by=world.owner.id)
    with pytest.raises(DuplicateRoleName):
        await service.update_role(role.id, performed_by=world.owner.id, name="Ops")


async def test_delete_role_cascades_and_audits(service, sessions, world, audit_entries):
    role = await service.create_role(world.workspace.id, "Ops", ["board.view"], performed_by=world.owner.id)
    await service.assign_role(world.member.id, world.workspace.id, role.id, performed_by=world.owner.id)

    await service.delete_role(role.id, performed_by=world.owner.id)

    remaining = await _count(
        sessions, select(func.count(RoleAssignment.id)).where(RoleAssignment.role_id == role.id),
    )
    assert remaining == 0
    with pytest.raises(RoleNotFound):
        await service.roles.get_role(role.id)
    [entry] = await audit_entries(world.workspace.id, action=AuditAction.ROLE_DELETED.value)
    assert entry.old_value["name"] == "Ops"
    assert entry.old_value["assignments_removed"] == 1
    assert entry.new_value is None


async def test_assign_role_is_idempotent(service, world, audit_entries):
    role = await service.create_role(world.workspace.id, "Ops", ["board.view"], performed_by=world.owner.id)

    first = await service.assign_role(world.member.id, world.workspace.id, role.id, performed_by=world.owner.id)
    second = await service.assign_role(world.member.id, world.workspace.id, role.id, performed_by=world.owner.id)

    assert first.id == second.id
    entries = await audit_entries(world.workspace.id, action=AuditAction.ROLE_ASSIGNED.value)
    assert len(entries) == 1
    assert entries[0].target_user_id == world.member.id

    assert await service.remove_role(world.member.id, world.workspace.id, role.id, performed_by=world.owner.id)
    assert not await service.remove_role(world.member.id, world.workspace.id, role.id, performed_by=world.owner.id)
    assert len(await audit_entries(world.workspace.id, action=AuditAction.ROLE_REMOVED.value)) == 1


async def test_assign_role_checks_workspace_and_membership(service, world):
    role = await service.create_role(world.workspace.id, "Ops", [], performed_by=world.owner.id)

    with pytest.raises(NotWorkspaceMember):
        await service.assign_role(world.outsider.id, world.workspace.id, role.id, performed_by=world.owner.id)
    with pytest.raises(RoleNotFound):
        await service.assign_role(world.outsider.id, world.other_workspace.id, role.id, performed_by=world.outsider.id)


async def test_list_roles_counts_assignees(service, world):
    ops = await service.create_role(world.workspace.id, "Ops", [], performed_by=world.owner.id)
    await service.create_role(world.workspace.id, "Dev", [], performed_by=world.owner.id)
    await service.assign_role(world.member.id, world.workspace.id, ops.id, performed_by=world.owner.id)
    await service.assign_role(world.teammate.id, world.workspace.id, ops.id, performed_by=world.owner.id)

    roles = await service.roles.list_roles(world.workspace.id)
    assert [(role.name, count) for role, count in roles] == [("Dev", 0), ("Ops", 2)]


# Groups ------------------------------------------------------------------

async def test_group_membership_changes_are_audited_once(service, world, audit_entries):
    group = await service.create_group(world.workspace.id, "Design", performed_by=world.owner.id)

    assert await service.add_group_member(group.id, world.member.id, performed_by=world.owner.id)
    assert not await service.add_group_member(group.id, world.member.id, performed_by=world.owner.id)
    assert await service.remove_group_member(group.id, world.member.id, performed_by=world.owner.id)
    assert not await service.remove_group_member(group.id, world.member.id, performed_by=world.owner.id)

    added = await audit_entries(world.workspace.id, action=AuditAction.GROUP_MEMBER_ADDED.value)
    removed = await audit_entries(world.workspace.id, action=AuditAction.GROUP_MEMBER_REMOVED.value)
    assert len(added) == 1 and len(removed) == 1
    assert added[0].new_value == {"group_id": group.id, "group_name": "Design", "user_id": world.member.id}
    assert removed[0].old_value == added[0].new_value


async def test_group_members_must_belong_to_workspace(service, world):
    with pytest.raises(NotWorkspaceMember):
        await service.create_group(
            world.workspace.id, "Mixed", performed_by=world.owner.id,
            member_ids=[world.member.id, world.outsider.id],
        )
    group = await service.create_group(world.workspace.id, "Design", performed_by=world.owner.id)
    with pytest.raises(NotWorkspaceMember):
        await service.add_group_member(group.id, world.outsider.id, performed_by=world.owner.id)


async def test_duplicate_group_name(service, world):
    await service.create_group(world.workspace.id, "Design", performed_by=world.owner.id)
    with pytest.raises(DuplicateGroupName):
        await service.create_group(world.workspace.id, "Design", performed_by=world.owner.id)


async def test_delete_group_removes_its_overrides(service, sessions, world):
    group = await service.create_group(
        world.workspace.id, "Design", performed_by=world.owner.id, member_ids=[world.member.id],
    )
    await service.set_override("board", world.board.id, "group", group.id, "edit", performed_by=world.owner.id)
    assert await service.check_resource_permission(world.member.id, "board", world.board.id, "edit")

    await service.delete_group(group.id, performed_by=world.owner.id)

    assert await _count(
        sessions, select(func.count(ResourceOverride.id)).where(ResourceOverride.subject_id == group.id),
    ) == 0
    assert not await service.check_resource_permission(world.member.id, "board", world.board.id, "view")
    with pytest.raises(GroupNotFound):
        await service.groups.get_group(group.id)


async def test_list_groups_with_members(service, world):
    await service.create_group(
        world.workspace.id, "Design", performed_by=world.owner.id,
        member_ids=[world.teammate.id, world.member.id],
    )
    [(group, member_ids)] = await service.groups.list_groups(world.workspace.id)
    assert group.name == "Design"
    assert member_ids == sorted([world.member.id, world.teammate.id])


# Overrides ---------------------------------------------------------------

async def test_set_override_twice_is_idempotent(service, sessions, world, audit_entries):
    first = await service.set_override("board", world.board.id, "user", world.member.id, "edit", performed_by=world.owner.id)
    second = await service.set_override("board", world.board.id, "user", world.member.id, "edit", performed_by=world.owner.id)

    assert first.id == second.id
    assert await _count(sessions, select(func.count(ResourceOverride.id))) == 1
    entries = await audit_entries(world.workspace.id, action=AuditAction.OVERRIDE_SET.value)
    assert len(entries) == 1
    assert entries[0].old_value is None
    assert entries[0].new_value["level"] == "edit"


async def test_changing_override_level_updates_in_place(service, sessions, world, audit_entries):
    await service.set_override("board", world.board.id, "user", world.member.id, "view", performed_by=world.owner.id)
    await service.set_override("board", world.board.id, "user", world.member.id, "admin", performed_by=world.owner.id)

    assert await _count(sessions, select(func.count(ResourceOverride.id))) == 1
    entries = await audit_entries(world.workspace.id, action=AuditAction.OVERRIDE_SET.value)
    assert [entry.new_value["level"] for entry in entries] == ["view", "admin"]
    assert entries[1].old_value["level"] == "view"


async def test_remove_override_is_idempotent(service, world, audit_entries):
    await service.set_override("board", world.board.id, "user", world.member.id, "view", performed_by=world.owner.id)

    assert await service.remove_override("board", world.board.id, "user", world.member.id, performed_by=world.owner.id)
    assert not await service.remove_override("board", world.board.id, "user", world.member.id, performed_by=world.owner.id)

    [entry] = await audit_entries(world.workspace.id, action=AuditAction.OVERRIDE_REMOVED.value)
    assert entry.old_value["level"] == "view"
    assert not await service.check_resource_permission(world.member.id, "board", world.board.id, "view")


async def test_override_validation(service, world):
    foreign = await service.create_group(world.other_workspace.id, "Foreign", performed_by=world.outsider.id)

    with pytest.raises(ResourceNotFound):
        await service.set_override("board", "missing", "user", world.member.id, "view", performed_by=world.owner.id)
    with pytest.raises(GroupNotFound):
        await service.set_override("board", world.board.id, "group", foreign.id, "view", performed_by=world.owner.id)
    with pytest.raises(ValueError):
        await service.set_override("board", world.board.id, "user", world.member.id, "superuser", performed_by=world.owner.id)


# Audit -------------------------------------------------------------------

async def test_audit_failure_does_not_fail_the_mutation(engine, sessions, world):
    service = PermissionService(sessions)
    async with engine.begin() as conn:
        await conn.exec_driver_sql("DROP TABLE permission_audit_logs")

    role = await service.create_role(world.workspace.id, "Ops", ["board.view"], performed_by=world.owner.id)

    assert (await service.roles.get_role(role.id)).name == "Ops"
    entry = await service.audit.append(
        world.workspace.id, AuditAction.ROLE_CREATED, AuditEntity.ROLE, role.id, performed_by=world.owner.id,
    )
    assert entry is None


async def test_audit_pages_newest_first(service, world):
    for name in ("One", "Two", "Three"):
        await service.create_role(world.workspace.id, name, [], performed_by=world.owner.id)

    page, total = await service.list_audit(world.workspace.id, 0, 2, action=AuditAction.ROLE_CREATED.value)
    assert total == 3
    assert len(page) == 2
    assert page[0].created_at >= page[1].created_at
