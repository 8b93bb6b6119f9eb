from __future__ import annotations

import contextvars
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, Mapping

from pedidos.contexts.erp.domain.gateway import ErpGateway, ErpGatewayError, require_entity_kind
from pedidos.contexts.sync.application.reconciler import EntityReconciler, PendingOrderPusher
from pedidos.contexts.sync.domain.mappings import SYNC_WAVES, mapping_for
from pedidos.contexts.sync.domain.summary import SyncRunSummary
from pedidos.contexts.sync.infrastructure.mirror_repository import MirrorRepository
from pedidos.contexts.sync.infrastructure.order_push_repository import PendingOrderRepository
from pedidos.observability import observe_sync_run


_LOGGER = logging.getLogger("pedidos")

# Summary and metrics label of the outbound order run; it is not an entity kind.
ORDER_PUSH = "orderPush"
DEFAULT_PUSH_LIMIT = 20


class SyncOrchestrator:
    """Runs sync jobs: authenticate, list, then reconcile item by item.

    `connect` opens a fresh local-store connection; each run owns the one it
    opens, so runs of different kinds can proceed on separate threads.
    `after_run` is called with every finished summary.
    """

    def __init__(
        self,
        gateway: ErpGateway,
        connect: Callable[[], Any],
        *,
        store_id: str,
        max_workers: int = 3,
        after_run: Callable[[SyncRunSummary], None] | None = None,
    ) -> None:
        self.gateway = gateway
        self.connect = connect
        self.store_id = store_id
        self.max_workers = max(1, int(max_workers))
        self.after_run = after_run

    def run_sync(self, kind: str, filter: Mapping[str, Any] | None = None) -> SyncRunSummary:
        require_entity_kind(kind)
        started = time.perf_counter()
        _LOGGER.info("sync_run_started", extra={"entity_kind": kind})

        try:
            self.gateway.authenticate()
            entities = self.gateway.list(kind, filter)
        except ErpGatewayError as exc:
            _LOGGER.warning(
                "sync_run_aborted",
                extra={
                    "entity_kind": kind,
                    "error_type": type(exc).__name__,
                    "error_code": exc.code,
                    "details": str(exc)[:500],
                },
            )
            observe_sync_run(kind, "aborted")
            raise

        summary = SyncRunSummary(entity_kind=kind)
        db = self.connect()
        try:
            reconciler = EntityReconciler(MirrorRepository(db, mapping_for(kind), store_id=self.store_id))
            for entity in entities:
                outcome = reconciler.reconcile(entity)
                summary.record(outcome)
                if outcome.failed:
                    _LOGGER.warning(
                        "sync_item_failed",
                        extra={"entity_kind": kind, "external_id": outcome.external_id, "details": outcome.message},
                    )
        finally:
            db.close()

        extra = summary.to_log_extra()
        extra["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
        _LOGGER.info("sync_run_finished", extra=extra)
        observe_sync_run(kind, "finished", summary.stats())
        if self.after_run is not None:
            self.after_run(summary)
        return summary

    def run_many(
        self,
        kinds: Iterable[str],
        filters: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> Dict[str, SyncRunSummary | ErpGatewayError]:
        """Run several kinds in dependency waves.

        `filters` maps a kind to the filter for that kind only. Kinds inside a
        wave run concurrently. A kind whose run aborts maps to the
        ErpGatewayError that aborted it; later waves still run.
        """
        requested = [require_entity_kind(kind) for kind in kinds]
        filters = filters or {}
        results: Dict[str, SyncRunSummary | ErpGatewayError] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="sync-run") as executor:
            for wave in SYNC_WAVES:
                selected = [kind for kind in wave if kind in requested]
                futures = {
                    kind: executor.submit(contextvars.copy_context().run, self.run_sync, kind, filters.get(kind))
                    for kind in selected
                }
                for kind, future in futures.items():
                    try:
                        results[kind] = future.result()
                    except ErpGatewayError as exc:
                        results[kind] = exc
        return {kind: results[kind] for kind in requested if kind in results}

    def push_pending_orders(self, limit: int = DEFAULT_PUSH_LIMIT) -> SyncRunSummary:
        """Create in the ERP the local orders it has never seen, oldest first.

        Only an authentication failure aborts the run; each order that cannot
        be pushed is counted as an error and the rest still go out.
        """
        started = time.perf_counter()
        _LOGGER.info("order_push_started", extra={"entity_kind": ORDER_PUSH, "limit": limit})
        try:
            self.gateway.authenticate()
        except ErpGatewayError as exc:
            _LOGGER.warning(
                "sync_run_aborted",
                extra={
                    "entity_kind": ORDER_PUSH,
                    "error_type": type(exc).__name__,
                    "error_code": exc.code,
                    "details": str(exc)[:500],
                },
            )
            observe_sync_run(ORDER_PUSH, "aborted")
            raise

        summary = SyncRunSummary(entity_kind=ORDER_PUSH)
        db = self.connect()
        try:
            repository = PendingOrderRepository(db)
            pusher = PendingOrderPusher(self.gateway, repository)
            for order in repository.pending_orders(limit):
                outcome = pusher.push(order)
                summary.record(outcome)
                if outcome.failed:
                    _LOGGER.warning(
                        "order_push_failed",
                        extra={"order_id": outcome.local_id, "details": outcome.message},
                    )
        finally:
            db.close()

        extra = summary.to_log_extra()
        extra["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
        _LOGGER.info("order_push_finished", extra=extra)
        observe_sync_run(ORDER_PUSH, "finished", summary.stats())
        if self.after_run is not None:
            self.after_run(summary)
        return summary
