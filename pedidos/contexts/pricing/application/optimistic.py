from __future__ import annotations

import contextvars
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Hashable

from pedidos.contexts.erp.domain.gateway import RemoteRejected, RemoteUnavailable
from pedidos.contexts.pricing.application.query_cache import CacheSnapshot, QueryCache
from pedidos.contexts.sync.domain.errors import LocalStoreError


IDLE = "idle"
OPTIMISTICALLY_APPLIED = "optimistically_applied"
SETTLED_SUCCESS = "settled_success"
ROLLED_BACK = "rolled_back"

_TRANSITIONS = {
    IDLE: (OPTIMISTICALLY_APPLIED,),
    OPTIMISTICALLY_APPLIED: (SETTLED_SUCCESS, ROLLED_BACK),
}

ROLLBACK_ERRORS = (RemoteRejected, RemoteUnavailable, LocalStoreError)


class IllegalTransition(RuntimeError):
    pass


@dataclass(frozen=True)
class MutationResult:
    state: str
    value: Any = None
    error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == SETTLED_SUCCESS


class OptimisticMutation:
    """One optimistic cache write paired with the remote write that confirms it.

    idle -> optimistically_applied -> settled_success | rolled_back
    """

    def __init__(
        self,
        cache: QueryCache,
        key: Hashable,
        updater: Callable[[Any], Any],
        remote_write: Callable[[], Any],
    ) -> None:
        self.cache = cache
        self.key = key
        self.updater = updater
        self.remote_write = remote_write
        self._state = IDLE
        self._state_lock = Lock()
        self._snapshot: CacheSnapshot | None = None

    @property
    def state(self) -> str:
        with self._state_lock:
            return self._state

    def _transition(self, target: str) -> None:
        with self._state_lock:
            if target not in _TRANSITIONS.get(self._state, ()):
                raise IllegalTransition(f"{self._state} -> {target}")
            self._state = target

    def apply(self) -> None:
        with self._state_lock:
            if self._state != IDLE:
                raise IllegalTransition(f"{self._state} -> {OPTIMISTICALLY_APPLIED}")
        self._snapshot = self.cache.apply_optimistic(self.key, self.updater)
        self._transition(OPTIMISTICALLY_APPLIED)

    def settle(self) -> MutationResult:
        if self.state != OPTIMISTICALLY_APPLIED:
            raise IllegalTransition(f"{self.state} -> settle")
        try:
            value = self.remote_write()
        except ROLLBACK_ERRORS as exc:
            self._roll_back()
            return MutationResult(ROLLED_BACK, error=exc)
        except Exception:
            self._roll_back()
            raise
        self._release()
        self._transition(SETTLED_SUCCESS)
        return MutationResult(SETTLED_SUCCESS, value=value)

    def _roll_back(self) -> None:
        if self._snapshot is not None:
            self.cache.restore(self._snapshot)
        self._release()
        self._transition(ROLLED_BACK)

    def _release(self) -> None:
        if self._snapshot is not None:
            self.cache.release(self._snapshot)
        self.cache.invalidate(self.key)


class OptimisticMutationCoordinator:
    """Applies optimistic writes in the caller and settles them on a worker pool."""

    def __init__(self, cache: QueryCache, *, max_workers: int = 4) -> None:
        self.cache = cache
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="pricelist-mutation")

    def submit(
        self,
        key: Hashable,
        updater: Callable[[Any], Any],
        remote_write: Callable[[], Any],
    ) -> tuple[OptimisticMutation, Future]:
        mutation = OptimisticMutation(self.cache, key, updater, remote_write)
        mutation.apply()
        future = self._executor.submit(contextvars.copy_context().run, mutation.settle)
        return mutation, future

    def run(
        self,
        key: Hashable,
        updater: Callable[[Any], Any],
        remote_write: Callable[[], Any],
    ) -> MutationResult:
        _mutation, future = self.submit(key, updater, remote_write)
        return future.result()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
