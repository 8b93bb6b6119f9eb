from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict

from pedidos.contexts.erp.domain.gateway import CLIENT, PRICE_LIST, ErpGateway, ExternalEntity
from pedidos.contexts.pricing.application.optimistic import (
    SETTLED_SUCCESS,
    MutationResult,
    OptimisticMutationCoordinator,
)
from pedidos.contexts.pricing.application.query_cache import CacheRead, QueryCache
from pedidos.contexts.pricing.infrastructure.client_repository import ClientPricingRepository
from pedidos.contexts.sync.application.reconciler import EntityReconciler
from pedidos.contexts.sync.domain.errors import LocalStoreError
from pedidos.contexts.sync.domain.mappings import mapping_for
from pedidos.contexts.sync.infrastructure.mirror_repository import MirrorRepository
from pedidos.errors import NotFoundError, UserActionError, ValidationError
from pedidos.observability import observe_pricelist_mutation


_LOGGER = logging.getLogger("pedidos")


def client_cache_key(client_id: int) -> tuple:
    return ("client", int(client_id))


def _positive_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    if isinstance(value, float) and not value.is_integer():
        return None
    return parsed if parsed > 0 else None


@dataclass(frozen=True)
class AssignPricelistInput:
    client_id: int
    pricelist_id: int

    @classmethod
    def from_payload(cls, client_id: int, payload: Dict[str, Any]) -> "AssignPricelistInput":
        pricelist_id = _positive_int(payload.get("pricelist_id"))
        if pricelist_id is None:
            raise ValidationError(
                code="pricelist_id_invalid",
                message_key="pricelist_id_invalid",
                payload={"field": "pricelist_id"},
            )
        return cls(client_id=int(client_id), pricelist_id=pricelist_id)


@dataclass(frozen=True)
class AssignPricelistResult:
    client_id: int
    pricelist_id: int
    state: str
    changed: bool = True
    error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == SETTLED_SUCCESS


class PricelistAssignmentService:
    """Price list edits: optimistic client assignment and new price lists."""

    def __init__(
        self,
        gateway: ErpGateway,
        cache: QueryCache,
        coordinator: OptimisticMutationCoordinator,
        connect: Callable[[], Any],
        *,
        store_id: str,
        repository: ClientPricingRepository | None = None,
    ) -> None:
        self.gateway = gateway
        self.cache = cache
        self.coordinator = coordinator
        self.connect = connect
        self.store_id = store_id
        self.repository = repository or ClientPricingRepository()

    def load_client(self, client_id: int) -> dict | None:
        db = self.connect()
        try:
            return self.repository.get_client(db, client_id)
        finally:
            db.close()

    def read_client(self, client_id: int) -> CacheRead:
        return self.cache.get_or_fetch(client_cache_key(client_id), lambda: self.load_client(client_id))

    def assign(self, data: AssignPricelistInput) -> AssignPricelistResult:
        db = self.connect()
        try:
            client = self.repository.get_client(db, data.client_id)
            pricelist = self.repository.get_price_list(db, data.pricelist_id)
        finally:
            db.close()

        if client is None:
            raise NotFoundError(code="client_not_found", message_key="client_not_found")
        if pricelist is None:
            raise NotFoundError(code="pricelist_not_found", message_key="pricelist_not_found")
        if client.get("external_id") is None or pricelist.get("external_id") is None:
            raise UserActionError(code="erp_link_missing", message_key="erp_link_missing", http_status=409)
        if client.get("pricelist_id") == pricelist["id"]:
            return AssignPricelistResult(data.client_id, data.pricelist_id, SETTLED_SUCCESS, changed=False)

        client_external_id = int(client["external_id"])
        pricelist_external_id = int(pricelist["external_id"])

        def updater(current: dict) -> dict:
            updated = dict(current)
            updated["pricelist_id"] = pricelist["id"]
            updated["odoo_pricelist_id"] = pricelist_external_id
            updated["pricelist_name"] = pricelist.get("name")
            return updated

        def remote_write() -> None:
            self.gateway.update(CLIENT, client_external_id, {"property_product_pricelist": pricelist_external_id})
            store = self.connect()
            try:
                self.repository.assign_pricelist(store, data.client_id, pricelist["id"], pricelist_external_id)
            finally:
                store.close()

        outcome = self.coordinator.run(client_cache_key(data.client_id), updater, remote_write)
        self._log_outcome(data, client, outcome)
        observe_pricelist_mutation(outcome.state)
        return AssignPricelistResult(data.client_id, data.pricelist_id, outcome.state, error=outcome.error)

    def list_rules(self, pricelist_id: int) -> Dict[str, Any]:
        """Mirrored ERP rules of one price list. Rules are edited in the ERP only."""
        db = self.connect()
        try:
            pricelist = self.repository.get_price_list(db, pricelist_id)
            if pricelist is None:
                raise NotFoundError(code="pricelist_not_found", message_key="pricelist_not_found")
            rules = self.repository.get_price_list_rules(db, pricelist_id)
        finally:
            db.close()

        for rule in rules:
            if rule["product_id"] is not None:
                rule["applies_to"] = "product"
            elif rule["category"]:
                rule["applies_to"] = "category"
            else:
                rule["applies_to"] = "all"
        return {"price_list": {"id": pricelist["id"], "name": pricelist["name"]}, "rules": rules}

    def create_price_list(self, name: Any) -> Dict[str, Any]:
        clean_name = name.strip() if isinstance(name, str) else ""
        if not clean_name:
            raise ValidationError(code="name_required", message_key="name_required", payload={"field": "name"})

        attributes = {"name": clean_name, "active": True}
        external_id = self.gateway.create(PRICE_LIST, attributes)

        db = self.connect()
        try:
            reconciler = EntityReconciler(MirrorRepository(db, mapping_for(PRICE_LIST), store_id=self.store_id))
            outcome = reconciler.reconcile(ExternalEntity(external_id=external_id, attributes=attributes))
        finally:
            db.close()
        if outcome.failed:
            raise LocalStoreError(outcome.message or "No se pudo reflejar la tarifa creada.")
        _LOGGER.info(
            "pricelist_created",
            extra={"external_id": external_id, "local_id": outcome.local_id, "pricelist_name": clean_name},
        )
        return {"id": outcome.local_id, "external_id": external_id, "name": clean_name}

    @staticmethod
    def _log_outcome(data: AssignPricelistInput, client: dict, outcome: MutationResult) -> None:
        extra = {
            "client_id": data.client_id,
            "client_external_id": client.get("external_id"),
            "pricelist_id": data.pricelist_id,
            "previous_pricelist_id": client.get("pricelist_id"),
            "state": outcome.state,
        }
        if outcome.succeeded:
            _LOGGER.info("pricelist_mutation_settled", extra=extra)
            return
        extra["error_type"] = type(outcome.error).__name__
        extra["details"] = str(outcome.error)[:500]
        _LOGGER.warning("pricelist_mutation_rolled_back", extra=extra)
