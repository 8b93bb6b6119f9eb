from __future__ import annotations

from contextlib import contextmanager
from threading import Lock
from typing import Dict, Iterable, Iterator, List


class SyncInProgress(RuntimeError):
    def __init__(self, kinds: Iterable[str]) -> None:
        self.kinds = sorted(set(kinds))
        super().__init__(f"Sincronizacion en curso: {', '.join(self.kinds)}")


class SyncRunGuard:
    """At most one running sync per entity kind in this process."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: Dict[str, Lock] = {}

    def _lock_for(self, kind: str) -> Lock:
        with self._guard:
            return self._locks.setdefault(kind, Lock())

    def is_running(self, kind: str) -> bool:
        return self._lock_for(kind).locked()

    @contextmanager
    def hold(self, kinds: Iterable[str]) -> Iterator[List[str]]:
        """Acquire every kind without blocking, or raise SyncInProgress."""
        ordered = sorted(set(kinds))
        acquired: List[Lock] = []
        try:
            for kind in ordered:
                lock = self._lock_for(kind)
                if not lock.acquire(blocking=False):
                    raise SyncInProgress([kind])
                acquired.append(lock)
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()
