from __future__ import annotations

import threading
import time
from typing import Callable, Iterable

DEFAULT_GRACE_CYCLES = 2
DEFAULT_TOMBSTONE_TTL_SECONDS = 6 * 60 * 60


class OrphanTracker:
    def __init__(
        self,
        grace_cycles: int = DEFAULT_GRACE_CYCLES,
        tombstone_ttl_seconds: float = DEFAULT_TOMBSTONE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.grace_cycles = max(1, int(grace_cycles))
        self.tombstone_ttl_seconds = max(0.0, float(tombstone_ttl_seconds))
        self._clock = clock
        self._lock = threading.RLock()
        self.miss_counts: dict[str, int] = {}
        self.tombstones: dict[str, float] = {}

    def configure(self, grace_cycles: int, tombstone_ttl_seconds: float) -> None:
        with self._lock:
            self.grace_cycles = max(1, int(grace_cycles))
            self.tombstone_ttl_seconds = max(0.0, float(tombstone_ttl_seconds))

    def prune(self) -> None:
        now = self._clock()
        with self._lock:
            for event_id, deleted_at in list(self.tombstones.items()):
                if now - deleted_at > self.tombstone_ttl_seconds:
                    del self.tombstones[event_id]

    def record_miss(self, path: str) -> int:
        with self._lock:
            count = self.miss_counts.get(path, 0) + 1
            self.miss_counts[path] = count
            return count

    def reached_grace(self, count: int) -> bool:
        return count >= self.grace_cycles

    def clear(self, path: str) -> None:
        with self._lock:
            self.miss_counts.pop(path, None)

    def drop_stale(self, keep: Iterable[str]) -> None:
        keep_set = set(keep)
        with self._lock:
            for path in list(self.miss_counts):
                if path not in keep_set:
                    del self.miss_counts[path]

    def record_deletion(self, event_id: str | None) -> None:
        if not event_id:
            return
        with self._lock:
            self.tombstones[event_id] = self._clock()

    def forget_deletion(self, event_id: str | None) -> None:
        if not event_id:
            return
        with self._lock:
            self.tombstones.pop(event_id, None)

    def has_recent_deletion(self, event_id: str | None) -> bool:
        if not event_id:
            return False
        with self._lock:
            deleted_at = self.tombstones.get(event_id)
            if deleted_at is None:
                return False
            if self._clock() - deleted_at > self.tombstone_ttl_seconds:
                del self.tombstones[event_id]
                return False
            return True

    def reset(self) -> None:
        with self._lock:
            self.miss_counts.clear()
            self.tombstones.clear()

    def snapshot(self) -> dict[str, dict]:
        with self._lock:
            return {"miss_counts": dict(self.miss_counts), "tombstones": dict(self.tombstones)}
