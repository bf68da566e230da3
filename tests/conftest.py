"""
Shared fixtures: a fresh SQLite database per test, a permission service wired
to it, and a seeded workspace.
"""
from collections.abc import AsyncIterator
from dataclasses import dataclass

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.core.database.engine import build_engine, build_sessionmaker, init_db
from app.features.permissions.cache import PermissionCache
from app.features.permissions.service import PermissionService
from app.features.users.models import User
from app.features.workspaces.models import Board, MemberRole, Project, Workspace


@dataclass
class World:
    workspace: Workspace
    other_workspace: Workspace
    owner: User
    admin: User
    member: User
    teammate: User
    viewer: User
    outsider: User
    board: Board
    project: Project
    other_board: Board


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    async_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'permissions.db'}")
    await init_db(async_engine)
    yield async_engine
    await async_engine.dispose()


@pytest.fixture
def sessions(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_sessionmaker(engine)


@pytest.fixture
def cache() -> PermissionCache:
    return PermissionCache(ttl=60.0, max_entries=1000)


@pytest.fixture
def service(sessions, cache) -> PermissionService:
    return PermissionService(sessions, cache=cache, timeout=5.0)


async def _add_users(sessions, *names: str) -> list[User]:
    users = [User(email=f"{name}@example.com", name=name.title()) for name in names]
    async with sessions.begin() as session:
        session.add_all(users)
    return users


@pytest_asyncio.fixture
async def world(sessions, service) -> World:
    owner, admin, member, teammate, viewer, outsider = await _add_users(
        sessions, "owner", "admin", "member", "teammate", "viewer", "outsider",
    )

    workspace = await service.members.create_workspace("Acme", owner.id)
    other_workspace = await service.members.create_workspace("Globex", outsider.id)
    await service.members.add_member(workspace.id, admin.id, MemberRole.ADMIN, performed_by=owner.id)
    await service.members.add_member(workspace.id, member.id, MemberRole.MEMBER, performed_by=owner.id)
    await service.members.add_member(workspace.id, teammate.id, MemberRole.MEMBER, performed_by=owner.id)
    await service.members.add_member(workspace.id, viewer.id, MemberRole.VIEWER, performed_by=owner.id)

    board = Board(workspace_id=workspace.id, name="Roadmap")
    project = Project(workspace_id=workspace.id, name="Launch")
    other_board = Board(workspace_id=other_workspace.id, name="Elsewhere")
    async with sessions.begin() as session:
        session.add_all([board, project, other_board])

    return World(
        workspace=workspace,
        other_workspace=other_workspace,
        owner=owner,
        admin=admin,
        member=member,
        teammate=teammate,
        viewer=viewer,
        outsider=outsider,
        board=board,
        project=project,
        other_board=other_board,
    )


@pytest.fixture
def audit_entries(service):
    """Fetch a workspace's audit entries oldest first."""
    async def fetch(workspace_id: str, **filters):
        entries, _ = await service.audit.list_entries(workspace_id, limit=500, **filters)
        return list(reversed(entries))
    return fetch
