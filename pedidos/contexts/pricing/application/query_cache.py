from __future__ import annotations

import copy
from dataclasses import dataclass
from threading import RLock
from typing import Any, Callable, Dict, Hashable

READY = "ready"
NOT_READY = "not_ready"


@dataclass
class CacheEntry:
    value: Any
    written_seq: int
    stale: bool = False


@dataclass(frozen=True)
class CacheRead:
    status: str
    value: Any = None

    @property
    def ready(self) -> bool:
        return self.status == READY


@dataclass(frozen=True)
class FetchTicket:
    key: Hashable
    started_seq: int


@dataclass(frozen=True)
class CacheSnapshot:
    """What a key held right before an optimistic write, plus that write's seq."""

    key: Hashable
    entry: CacheEntry | None
    applied_seq: int | None


class QueryCache:
    """Process-local read cache with monotonic write ordering.

    Every write and every fetch start draws from one increasing sequence.
    A fetch result is applied only if nothing was written to its key and no
    cancellation happened after the fetch started, so a slow read can never
    overwrite a newer optimistic value.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._entries: Dict[Hashable, CacheEntry] = {}
        self._last_write_seq: Dict[Hashable, int] = {}
        self._cancelled_at: Dict[Hashable, int] = {}
        self._invalidated_at = 0
        self._pending: Dict[Hashable, int] = {}
        self._seq = 0
        self._ready = False

    def mark_ready(self) -> None:
        with self._lock:
            self._ready = True

    @property
    def is_ready(self) -> bool:
        with self._lock:
            return self._ready

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def peek(self, key: Hashable) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(key)
            return copy.deepcopy(entry) if entry is not None else None

    def begin_fetch(self, key: Hashable) -> FetchTicket:
        with self._lock:
            return FetchTicket(key=key, started_seq=self._next_seq())

    def complete_fetch(self, ticket: FetchTicket, value: Any) -> bool:
        with self._lock:
            if self._last_write_seq.get(ticket.key, 0) >= ticket.started_seq:
                return False
            if self._cancelled_at.get(ticket.key, 0) > ticket.started_seq:
                return False
            if self._invalidated_at > ticket.started_seq:
                return False
            # Stamped with its start so an older fetch cannot land on a newer one.
            self._write(ticket.key, value, seq=ticket.started_seq)
            return True

    def cancel_fetches(self, key: Hashable) -> None:
        with self._lock:
            self._cancelled_at[key] = self._next_seq()

    def get_or_fetch(self, key: Hashable, loader: Callable[[], Any]) -> CacheRead:
        with self._lock:
            if not self._ready:
                return CacheRead(NOT_READY)
            entry = self._entries.get(key)
            if entry is not None and not entry.stale:
                return CacheRead(READY, copy.deepcopy(entry.value))
            ticket = self.begin_fetch(key)

        value = loader()
        if value is None:
            # Misses are not cached; the record may be mirrored by the next sync.
            return CacheRead(READY, None)
        if self.complete_fetch(ticket, value):
            return CacheRead(READY, copy.deepcopy(value))

        with self._lock:
            entry = self._entries.get(key)
            return CacheRead(READY, copy.deepcopy(entry.value) if entry is not None else value)

    def apply_optimistic(self, key: Hashable, updater: Callable[[Any], Any]) -> CacheSnapshot:
        """Cancel in-flight fetches, snapshot the entry and write `updater(value)`.

        All three happen under one lock. Nothing is written when the key is
        not cached or holds no value; the next read fetches the settled value
        instead.
        """
        with self._lock:
            self.cancel_fetches(key)
            previous = self._entries.get(key)
            if previous is None or previous.value is None:
                return CacheSnapshot(key=key, entry=None, applied_seq=None)
            snapshot_entry = copy.deepcopy(previous)
            applied = self._write(key, updater(copy.deepcopy(previous.value)))
            self._pending[key] = self._pending.get(key, 0) + 1
            return CacheSnapshot(key=key, entry=snapshot_entry, applied_seq=applied.written_seq)

    def restore(self, snapshot: CacheSnapshot) -> bool:
        """Put the snapshot back unless a later write already replaced ours."""
        with self._lock:
            if snapshot.applied_seq is None:
                return False
            if self._last_write_seq.get(snapshot.key, 0) != snapshot.applied_seq:
                return False
            self._write(snapshot.key, copy.deepcopy(snapshot.entry.value))
            return True

    def release(self, snapshot: CacheSnapshot) -> None:
        """End the pending state that `apply_optimistic` started for this snapshot."""
        with self._lock:
            if snapshot.applied_seq is None:
                return
            remaining = self._pending.get(snapshot.key, 0) - 1
            if remaining > 0:
                self._pending[snapshot.key] = remaining
            else:
                self._pending.pop(snapshot.key, None)

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.stale = True

    def invalidate_all(self) -> None:
        """Mark entries stale and discard fetches already in flight.

        Keys with a pending optimistic write keep their value; settling
        invalidates them.
        """
        with self._lock:
            self._invalidated_at = self._next_seq()
            for key, entry in self._entries.items():
                if key not in self._pending:
                    entry.stale = True

    def _write(self, key: Hashable, value: Any, seq: int | None = None) -> CacheEntry:
        if seq is None:
            seq = self._next_seq()
        entry = CacheEntry(value=copy.deepcopy(value), written_seq=seq)
        self._entries[key] = entry
        self._last_write_seq[key] = seq
        return entry
