"""
In-process cache of permission decisions.

Entries are keyed by (workspace, principal, scope) and dropped for a whole
workspace whenever anything permission-affecting in it is written. Coarse
invalidation means a single role change evicts every principal's entries in
that workspace; between a write's commit and its invalidation a reader may
still be served the previous decision.

A per-workspace generation counter guards against a decision that was read
before an invalidation being stored after it.
"""
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from typing import Any

from app.utils import get_logger


log = get_logger(__name__)

CacheKey = tuple[str, str, Hashable]


class PermissionCache:
    """Thread-safe TTL map with per-workspace invalidation."""

    def __init__(
        self,
        ttl: float = 60.0,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: OrderedDict[CacheKey, tuple[float, Any]] = OrderedDict()
        self._by_workspace: dict[str, set[CacheKey]] = {}
        self._generations: dict[str, int] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def generation(self, workspace_id: str) -> int:
        """Snapshot to pass back to ``put``; taken before reading the store."""
        with self._lock:
            return self._generations.setdefault(workspace_id, 0)

    def get(self, workspace_id: str, principal_id: str, scope: Hashable) -> Any | None:
        key = (workspace_id, principal_id, scope)
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            expires_at, value = item
            if expires_at <= self._clock():
                self._discard(key)
                return None
            return value

    def put(
        self,
        workspace_id: str,
        principal_id: str,
        scope: Hashable,
        value: Any,
        generation: int,
    ) -> bool:
        """
        Store a decision unless the workspace was invalidated since
        ``generation`` was taken. Returns whether the value was stored.
        """
        key = (workspace_id, principal_id, scope)
        with self._lock:
            if self._generations.get(workspace_id, 0) != generation:
                return False
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = (self._clock() + self.ttl, value)
            self._by_workspace.setdefault(workspace_id, set()).add(key)
            while len(self._entries) > self.max_entries:
                oldest, _ = self._entries.popitem(last=False)
                self._unindex(oldest)
            return True

    def invalidate_workspace(self, workspace_id: str) -> int:
        """Drop every entry for the workspace. Returns the number dropped."""
        with self._lock:
            self._generations[workspace_id] = self._generations.get(workspace_id, 0) + 1
            keys = self._by_workspace.pop(workspace_id, set())
            for key in keys:
                self._entries.pop(key, None)
        if keys:
            log.debug("Invalidated %s cached decision(s) for workspace %s", len(keys), workspace_id)
        return len(keys)

    def clear(self) -> None:
        """Drop everything and reject every decision read before the call."""
        with self._lock:
            for workspace_id in self._generations:
                self._generations[workspace_id] += 1
            self._entries.clear()
            self._by_workspace.clear()

    def _discard(self, key: CacheKey) -> None:
        self._entries.pop(key, None)
        self._unindex(key)

    def _unindex(self, key: CacheKey) -> None:
        keys = self._by_workspace.get(key[0])
        if keys is not None:
            keys.discard(key)
            if not keys:
                del self._by_workspace[key[0]]
