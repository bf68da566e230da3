"""Decision cache tests."""
import pytest

from app.features.permissions.authorizer import Authorizer, DecisionReason
from app.features.permissions.cache import PermissionCache


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_put_and_get():
    cache = PermissionCache()
    assert cache.put("ws", "alice", "scope", "allow", cache.generation("ws"))
    assert cache.get("ws", "alice", "scope") == "allow"
    assert cache.get("ws", "bob", "scope") is None


def test_entries_expire():
    clock = FakeClock()
    cache = PermissionCache(ttl=10, clock=clock)
    cache.put("ws", "alice", "scope", "allow", 0)

    clock.now += 9.9
    assert cache.get("ws", "alice", "scope") == "allow"
    clock.now += 0.2
    assert cache.get("ws", "alice", "scope") is None
    assert len(cache) == 0


def test_invalidate_is_scoped_to_workspace():
    cache = PermissionCache()
    cache.put("ws1", "alice", "a", 1, 0)
    cache.put("ws1", "bob", "b", 2, 0)
    cache.put("ws2", "alice", "a", 3, 0)

    assert cache.invalidate_workspace("ws1") == 2
    assert cache.get("ws1", "alice", "a") is None
    assert cache.get("ws2", "alice", "a") == 3


def test_stale_generation_is_not_stored():
    cache = PermissionCache()
    generation = cache.generation("ws")
    cache.invalidate_workspace("ws")

    assert not cache.put("ws", "alice", "scope", "allow", generation)
    assert cache.get("ws", "alice", "scope") is None


def test_oldest_entries_are_evicted():
    cache = PermissionCache(max_entries=2)
    cache.put("ws", "a", "s", 1, 0)
    cache.put("ws", "b", "s", 2, 0)
    cache.put("ws", "c", "s", 3, 0)

    assert len(cache) == 2
    assert cache.get("ws", "a", "s") is None
    assert cache.get("ws", "c", "s") == 3


def test_clear_rejects_in_flight_puts():
    cache = PermissionCache()
    cache.put("ws", "a", "s", 1, 0)
    generation = cache.generation("ws")
    cache.clear()

    assert len(cache) == 0
    assert not cache.put("ws", "a", "s", 1, generation)


@pytest.mark.asyncio
async def test_writes_invalidate_cached_decisions(service, cache, world):
    first = await service.decide_workspace(world.member.id, world.workspace.id, "kpi.view")
    assert first.reason is DecisionReason.NO_PERMISSION
    assert len(cache) == 1

    role = await service.create_role(world.workspace.id, "KPI", ["kpi.view"], performed_by=world.owner.id)
    await service.assign_role(world.member.id, world.workspace.id, role.id, performed_by=world.owner.id)

    assert len(cache) == 0
    assert await service.check_workspace_permission(world.member.id, world.workspace.id, "kpi.view")


@pytest.mark.asyncio
async def test_cached_decision_is_served_without_reading(sessions, cache, world):
    authorizer = Authorizer(sessions, cache=cache)
    decision = await authorizer.decide_workspace(world.member.id, world.workspace.id, "kpi.view")

    broken = Authorizer(None, cache=cache)
    assert await broken.decide_workspace(world.member.id, world.workspace.id, "kpi.view") == decision


def test_clear_rejects_reads_taken_on_empty_workspaces():
    cache = PermissionCache()
    generation = cache.generation("ws")
    cache.clear()

    assert not cache.put("ws", "alice", "scope", "stale", generation)
    assert cache.put("ws", "alice", "scope", "fresh", cache.generation("ws"))
