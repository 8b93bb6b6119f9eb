from __future__ import annotations

import logging
import os
import threading
import time
from typing import Callable, Iterable

from flask import Flask

from pedidos.contexts.erp.domain.gateway import ENTITY_KINDS, ORDER, ErpGatewayError
from pedidos.contexts.sync.application.orchestrator import ORDER_PUSH
from pedidos.contexts.sync.application.run_guard import SyncInProgress
from pedidos.contexts.sync.domain.mappings import SYNC_WAVES


_LOGGER = logging.getLogger("pedidos")


class SyncScheduler:
    """Periodically runs the configured sync kinds, backing off per kind on failure."""

    def __init__(self, app: Flask, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.app = app
        self.clock = clock
        self.interval_seconds = _int_config(app, "SYNC_SCHEDULER_INTERVAL_SECONDS", 900, 10, 86_400)
        self.min_backoff_seconds = _int_config(app, "SYNC_SCHEDULER_MIN_BACKOFF_SECONDS", 30, 5, 3600)
        self.max_backoff_seconds = _int_config(
            app,
            "SYNC_SCHEDULER_MAX_BACKOFF_SECONDS",
            1800,
            self.min_backoff_seconds,
            86_400,
        )
        self.kinds = _parse_kinds(app.config.get("SYNC_SCHEDULER_KINDS"))
        self.push_orders = bool(app.config.get("SYNC_SCHEDULER_PUSH_ORDERS", False))

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._failure_counts: dict[str, int] = {}
        self._next_run_at: dict[str, float] = {}

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self.interval_seconds)

    def run_once(self) -> None:
        for kind in self.kinds:
            self._run_kind(kind)
        if self.push_orders:
            self._run_push()

    def _run_kind(self, kind: str) -> None:
        orchestrator = self.app.extensions["sync_orchestrator"]
        self._run_job(kind, [kind], lambda: orchestrator.run_sync(kind))

    def _run_push(self) -> None:
        orchestrator = self.app.extensions["sync_orchestrator"]
        self._run_job(ORDER_PUSH, [ORDER], orchestrator.push_pending_orders)

    def _run_job(self, key: str, hold: list[str], job: Callable[[], object]) -> None:
        if not self._is_due(key):
            return
        guard = self.app.extensions["sync_run_guard"]
        try:
            with guard.hold(hold):
                job()
        except SyncInProgress:
            return
        except ErpGatewayError as exc:
            self._register_failure(key, exc)
            return
        except Exception as exc:  # noqa: BLE001 - the loop must survive a broken run
            _LOGGER.exception("sync_scheduler_failed", extra={"entity_kind": key})
            self._register_failure(key, exc)
            return
        self._clear_backoff(key)

    def _is_due(self, kind: str) -> bool:
        next_run_at = self._next_run_at.get(kind)
        if next_run_at is None:
            return True
        return self.clock() >= next_run_at

    def _clear_backoff(self, kind: str) -> None:
        self._failure_counts.pop(kind, None)
        self._next_run_at.pop(kind, None)

    def _register_failure(self, kind: str, exc: Exception) -> None:
        failure_count = self._failure_counts.get(kind, 0) + 1
        self._failure_counts[kind] = failure_count
        backoff_seconds = min(
            self.max_backoff_seconds,
            self.min_backoff_seconds * (2 ** (failure_count - 1)),
        )
        self._next_run_at[kind] = self.clock() + backoff_seconds
        _LOGGER.warning(
            "sync_scheduler_backoff",
            extra={
                "entity_kind": kind,
                "failure_count": failure_count,
                "backoff_seconds": backoff_seconds,
                "details": str(exc)[:500],
            },
        )


def start_sync_scheduler(app: Flask) -> SyncScheduler | None:
    if not _should_start_scheduler(app):
        return None
    scheduler = SyncScheduler(app)
    scheduler.start()
    app.extensions["sync_scheduler"] = scheduler
    app.logger.info(
        "Sync scheduler started: interval=%ss kinds=%s",
        scheduler.interval_seconds,
        ", ".join(scheduler.kinds),
    )
    return scheduler


def _should_start_scheduler(app: Flask) -> bool:
    if not app.config.get("SYNC_SCHEDULER_ENABLED", False):
        return False
    if app.config.get("TESTING"):
        return False
    if app.debug:
        run_main = os.environ.get("WERKZEUG_RUN_MAIN")
        if run_main and run_main.lower() != "true":
            return False
    return True


def _int_config(app: Flask, key: str, default: int, min_value: int, max_value: int) -> int:
    try:
        value = int(app.config.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(min_value, min(value, max_value))


def _parse_kinds(value: object) -> list[str]:
    items: Iterable[str]
    if value is None:
        items = ENTITY_KINDS
    elif isinstance(value, str):
        items = [kind.strip() for kind in value.split(",") if kind.strip()]
    elif isinstance(value, (list, tuple, set)):
        items = [str(kind).strip() for kind in value if str(kind).strip()]
    else:
        items = ENTITY_KINDS

    selected = set(items) & set(ENTITY_KINDS)
    if not selected:
        selected = set(ENTITY_KINDS)
    # Dependency order, so clients resolve price lists mirrored in the same tick.
    return [kind for wave in SYNC_WAVES for kind in wave if kind in selected]
