from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping

from pedidos.contexts.erp.domain.gateway import ORDER, ErpGateway, ErpGatewayError, ExternalEntity
from pedidos.contexts.sync.domain.errors import LocalStoreError, MalformedRecord, UnpushableOrder
from pedidos.contexts.sync.domain.mappings import EntityMapping
from pedidos.contexts.sync.domain.summary import CREATED, FAILED, UPDATED, ReconcileOutcome
from pedidos.contexts.sync.infrastructure.mirror_repository import MirrorRepository
from pedidos.contexts.sync.infrastructure.order_push_repository import PendingOrderRepository


_LOGGER = logging.getLogger("pedidos")


def require_external_id(value: Any) -> int:
    if value is None:
        raise MalformedRecord("Registro ERP sin external_id.")
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedRecord(f"external_id invalido: {value!r}", external_id=value)
    if value <= 0:
        raise MalformedRecord(f"external_id invalido: {value!r}", external_id=value)
    return value


class EntityReconciler:
    """Upserts one ERP entity into the local mirror, keyed by external id.

    Every call is its own transaction. Platform-native rows (external_id
    NULL) are never matched, so they are never touched.
    """

    def __init__(self, repository: MirrorRepository) -> None:
        self.repository = repository

    @property
    def mapping(self) -> EntityMapping:
        return self.repository.mapping

    def reconcile(self, entity: ExternalEntity) -> ReconcileOutcome:
        try:
            external_id = require_external_id(entity.external_id)
            existing = self.repository.find_by_external_id(external_id)
            values = self.map_values(external_id, entity.attributes, partial=existing is not None)
            values.update(self._resolve_references(entity.attributes, partial=existing is not None))

            if existing is not None:
                local_id = int(existing["id"])
                self.repository.update(local_id, values)
                self.repository.commit()
                return ReconcileOutcome(UPDATED, external_id, local_id)

            local_id = self.repository.insert(external_id, values)
            self.repository.commit()
            return ReconcileOutcome(CREATED, external_id, local_id)
        except MalformedRecord as exc:
            return ReconcileOutcome(FAILED, entity.external_id, None, str(exc))
        except LocalStoreError as exc:
            self._rollback_quietly()
            return ReconcileOutcome(FAILED, entity.external_id, None, str(exc))

    def map_values(self, external_id: int, attributes: Mapping[str, Any], *, partial: bool) -> Dict[str, Any]:
        """Convert attributes into column values.

        On update (`partial`) attributes the entity does not carry are left
        alone; on insert they take the rule's fallback.
        """
        values: Dict[str, Any] = {}
        for rule in self.mapping.fields:
            if partial and rule.source not in attributes:
                continue
            try:
                value = rule.convert(attributes.get(rule.source))
            except (TypeError, ValueError) as exc:
                raise MalformedRecord(f"Campo {rule.source} invalido: {exc}", external_id=external_id) from exc
            if value is None and rule.fallback is not None:
                value = rule.fallback
                if isinstance(value, str):
                    value = value.format(external_id=external_id)
            values[rule.column] = value
        return values

    def _resolve_references(self, attributes: Mapping[str, Any], *, partial: bool) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for reference in self.mapping.references:
            if partial and reference.source not in attributes and not reference.required:
                continue
            raw = attributes.get(reference.source)
            local_id = None
            if raw is not None:
                if isinstance(raw, bool) or not isinstance(raw, int):
                    raise MalformedRecord(f"Referencia {reference.source} invalida: {raw!r}")
                local_id = self.repository.resolve(reference.table, raw)
            if local_id is None and reference.required:
                raise LocalStoreError(
                    f"Referencia {reference.source}={raw!r} no existe en {reference.table}."
                )
            values[reference.column] = local_id
        return values

    def _rollback_quietly(self) -> None:
        try:
            self.repository.rollback()
        except LocalStoreError:
            _LOGGER.exception("sync_rollback_failed", extra={"entity_kind": self.mapping.kind})


class PendingOrderPusher:
    """Creates one local order in the ERP and links it back.

    Problems with one order are reported as a failed outcome so the caller
    can keep pushing the rest.
    """

    def __init__(self, gateway: ErpGateway, repository: PendingOrderRepository) -> None:
        self.gateway = gateway
        self.repository = repository

    def push(self, order: Mapping[str, Any]) -> ReconcileOutcome:
        local_id = int(order["id"])
        try:
            values = self.order_values(order, self.repository.order_lines(local_id))
            external_id = self.gateway.create(ORDER, values)
        except (UnpushableOrder, LocalStoreError, ErpGatewayError) as exc:
            return ReconcileOutcome(FAILED, None, local_id, str(exc))

        try:
            self.repository.mark_pushed(local_id, external_id)
        except LocalStoreError as exc:
            # The ERP already holds this order; a retry would create it twice.
            _LOGGER.error(
                "order_push_link_failed",
                extra={"order_id": local_id, "external_id": external_id, "details": str(exc)[:500]},
            )
            return ReconcileOutcome(FAILED, external_id, local_id, str(exc))
        return ReconcileOutcome(CREATED, external_id, local_id)

    @staticmethod
    def order_values(order: Mapping[str, Any], lines: List[Mapping[str, Any]]) -> Dict[str, Any]:
        if order.get("client_external_id") is None:
            raise UnpushableOrder("Cliente sin vinculo ERP.")
        if not lines:
            raise UnpushableOrder("Pedido sin lineas.")

        order_line = []
        for line in lines:
            if line.get("product_external_id") is None:
                raise UnpushableOrder(f"Producto {line.get('product_id')} sin vinculo ERP.")
            order_line.append(
                [
                    0,
                    0,
                    {
                        "product_id": int(line["product_external_id"]),
                        "product_uom_qty": float(line["quantity"]),
                        "price_unit": float(line["unit_price"] or 0),
                    },
                ]
            )
        return {
            "partner_id": int(order["client_external_id"]),
            "order_line": order_line,
            "note": order.get("notes") or f"Pedido desde App: {order.get('order_number')}",
        }
