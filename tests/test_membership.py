"""Workspace membership lifecycle tests."""
import pytest
from sqlalchemy import func, select

from app.features.permissions.audit import AuditAction
from app.features.permissions.errors import (
    CannotRemoveOwner,
    InvalidMembershipChange,
    MembershipForbidden,
    NotWorkspaceMember,
    WorkspaceNotFound,
)
from app.features.permissions.models import ResourceOverride, group_members
from app.features.workspaces.models import MemberRole


pytestmark = pytest.mark.asyncio


async def test_creator_becomes_owner(service, world):
    member = await service.members.get_membership(world.workspace.id, world.owner.id)
    assert member.role is MemberRole.OWNER
    assert world.workspace.owner_id == world.owner.id


async def test_add_member_rules(service, world):
    with pytest.raises(InvalidMembershipChange):
        await service.members.add_member(world.workspace.id, world.member.id, performed_by=world.owner.id)
    with pytest.raises(InvalidMembershipChange):
        await service.members.add_member(world.workspace.id, world.outsider.id, "owner", performed_by=world.owner.id)
    with pytest.raises(WorkspaceNotFound):
        await service.members.add_member("missing", world.outsider.id, performed_by=world.owner.id)


async def test_promotion_takes_effect_immediately(service, world, audit_entries):
    assert not await service.check_workspace_permission(world.member.id, world.workspace.id, "workspace.delete")

    await service.members.change_member_role(world.workspace.id, world.member.id, "admin", performed_by=world.owner.id)

    assert await service.check_workspace_permission(world.member.id, world.workspace.id, "workspace.delete")
    [entry] = await audit_entries(world.workspace.id, action=AuditAction.MEMBER_ROLE_CHANGED.value)
    assert entry.old_value == {"role": "member"}
    assert entry.new_value == {"role": "admin"}


async def test_owner_role_is_fixed(service, world):
    with pytest.raises(InvalidMembershipChange):
        await service.members.change_member_role(world.workspace.id, world.owner.id, "member", performed_by=world.admin.id)
    with pytest.raises(InvalidMembershipChange):
        await service.members.change_member_role(world.workspace.id, world.member.id, "owner", performed_by=world.owner.id)
    with pytest.raises(CannotRemoveOwner):
        await service.members.remove_member(world.workspace.id, world.owner.id, performed_by=world.admin.id)


async def test_remove_member_drops_every_grant(service, sessions, world):
    role = await service.create_role(world.workspace.id, "Ops", ["board.view"], performed_by=world.owner.id)
    await service.assign_role(world.member.id, world.workspace.id, role.id, performed_by=world.owner.id)
    group = await service.create_group(
        world.workspace.id, "Design", performed_by=world.owner.id, member_ids=[world.member.id],
    )
    await service.set_override("board", world.board.id, "user", world.member.id, "admin", performed_by=world.owner.id)

    await service.members.remove_member(world.workspace.id, world.member.id, performed_by=world.owner.id)

    assert await service.members.get_membership(world.workspace.id, world.member.id) is None
    assert await service.roles.list_assignments(world.workspace.id, world.member.id) == []
    async with sessions() as session:
        in_group = (await session.execute(
            select(func.count()).select_from(group_members).where(group_members.c.group_id == group.id)
        )).scalar()
        overrides = (await session.execute(
            select(func.count(ResourceOverride.id)).where(ResourceOverride.subject_id == world.member.id)
        )).scalar()
    assert in_group == 0
    assert overrides == 0
    assert not await service.check_resource_permission(world.member.id, "board", world.board.id, "view")

    with pytest.raises(NotWorkspaceMember):
        await service.members.remove_member(world.workspace.id, world.member.id, performed_by=world.owner.id)


async def test_transfer_ownership(service, world, audit_entries):
    workspace = await service.members.transfer_ownership(
        world.workspace.id, world.member.id, performed_by=world.owner.id,
    )

    assert workspace.owner_id == world.member.id
    new_owner = await service.members.get_membership(world.workspace.id, world.member.id)
    old_owner = await service.members.get_membership(world.workspace.id, world.owner.id)
    assert new_owner.role is MemberRole.OWNER
    assert old_owner.role is MemberRole.ADMIN

    [entry] = await audit_entries(world.workspace.id, action=AuditAction.OWNERSHIP_TRANSFERRED.value)
    assert entry.old_value == {"owner_id": world.owner.id}
    assert entry.new_value == {"owner_id": world.member.id}

    owners = [m for m in await service.members.list_members(world.workspace.id) if m.role is MemberRole.OWNER]
    assert [m.user_id for m in owners] == [world.member.id]


async def test_transfer_requires_a_member(service, world):
    with pytest.raises(NotWorkspaceMember):
        await service.members.transfer_ownership(world.workspace.id, world.outsider.id, performed_by=world.owner.id)
    with pytest.raises(InvalidMembershipChange):
        await service.members.transfer_ownership(world.workspace.id, world.owner.id, performed_by=world.owner.id)


async def test_admin_membership_is_owner_controlled(service, world):
    with pytest.raises(MembershipForbidden):
        await service.members.add_member(world.workspace.id, world.outsider.id, "admin", performed_by=world.admin.id)
    with pytest.raises(MembershipForbidden):
        await service.members.change_member_role(world.workspace.id, world.member.id, "admin", performed_by=world.admin.id)
    with pytest.raises(MembershipForbidden):
        await service.members.remove_member(world.workspace.id, world.admin.id, performed_by=world.member.id)

    member = await service.members.change_member_role(
        world.workspace.id, world.member.id, "viewer", performed_by=world.admin.id,
    )
    assert member.role is MemberRole.VIEWER

    # No actor means an internal call, such as seeding.
    added = await service.members.add_member(world.workspace.id, world.outsider.id, "admin", performed_by=None)
    assert added.role is MemberRole.ADMIN
