from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Dict, List, Mapping

from pedidos.contexts.erp.domain.gateway import (
    CLIENT,
    ORDER,
    PRICE_LIST,
    PRICE_LIST_ITEM,
    PRODUCT,
    SALES_REP,
    ErpGateway,
    ExternalEntity,
    RemoteRejected,
    RemoteUnavailable,
    require_entity_kind,
)
from pedidos.contexts.erp.infrastructure.circuit_breaker import ErpCircuitBreaker
from pedidos.contexts.erp.infrastructure.client import ErpError, OdooJsonRpcClient


_LOGGER = logging.getLogger("pedidos")


MODEL_BY_KIND: Dict[str, str] = {
    PRICE_LIST: "product.pricelist",
    SALES_REP: "res.users",
    PRODUCT: "product.product",
    CLIENT: "res.partner",
    ORDER: "sale.order",
    PRICE_LIST_ITEM: "product.pricelist.item",
}

FIELDS_BY_KIND: Dict[str, List[str]] = {
    PRICE_LIST: ["id", "name", "active", "currency_id"],
    SALES_REP: ["id", "name", "login", "email", "active"],
    PRODUCT: [
        "id",
        "name",
        "description_sale",
        "list_price",
        "qty_available",
        "categ_id",
        "uom_id",
        "active",
    ],
    CLIENT: [
        "id",
        "name",
        "email",
        "phone",
        "street",
        "city",
        "state_id",
        "zip",
        "property_product_pricelist",
    ],
    ORDER: [
        "id",
        "name",
        "partner_id",
        "state",
        "invoice_status",
        "amount_untaxed",
        "amount_tax",
        "amount_total",
        "date_order",
    ],
    PRICE_LIST_ITEM: [
        "id",
        "pricelist_id",
        "product_id",
        "categ_id",
        "min_quantity",
        "date_start",
        "date_end",
        "compute_price",
        "fixed_price",
        "percent_price",
    ],
}

DEFAULT_DOMAIN: Dict[str, List[list]] = {
    SALES_REP: [["share", "=", False]],
    PRODUCT: [["active", "=", True]],
    CLIENT: [["customer_rank", ">", 0]],
}

# Archived price lists are mirrored too.
DEFAULT_CONTEXT: Dict[str, dict] = {
    PRICE_LIST: {"active_test": False},
    PRICE_LIST_ITEM: {"active_test": False},
}

BOOLEAN_FIELDS = frozenset({"active"})

REJECTION_FAULTS = frozenset({"ValidationError", "UserError", "MissingError", "AccessError"})


def flatten_record(row: Mapping[str, Any]) -> Dict[str, Any]:
    """Turn an Odoo `search_read` row into primitive attributes.

    Many-to-one values (`[id, "Name"]`) become `field` and `field_name`;
    Odoo's `False` placeholder for empty non-boolean fields becomes None.
    """
    attributes: Dict[str, Any] = {}
    for field, value in row.items():
        if field == "id":
            continue
        if isinstance(value, (list, tuple)) and len(value) == 2 and isinstance(value[0], int):
            attributes[field] = value[0]
            attributes[f"{field}_name"] = value[1]
            continue
        if value is False and field not in BOOLEAN_FIELDS:
            attributes[field] = None
            if field.endswith("_id") or field == "property_product_pricelist":
                attributes[f"{field}_name"] = None
            continue
        attributes[field] = value
    return attributes


def classify_erp_error(exc: ErpError):
    fault = (exc.fault_name or "").rsplit(".", 1)[-1]
    if fault in REJECTION_FAULTS:
        return RemoteRejected(str(exc), code=f"odoo_{fault}")
    if fault == "AccessDenied":
        return RemoteUnavailable(str(exc), code="erp_access_denied")
    if exc.fault_name:
        return RemoteUnavailable(str(exc), code="erp_server_error")
    return RemoteUnavailable(str(exc), code="erp_transport_error")


class OdooErpGateway(ErpGateway):
    def __init__(
        self,
        client: OdooJsonRpcClient,
        *,
        database: str,
        login: str,
        api_key: str,
        breaker: ErpCircuitBreaker | None = None,
    ) -> None:
        self.client = client
        self.database = database
        self.login = login
        self.api_key = api_key
        self.breaker = breaker
        self._uid: int | None = None
        self._auth_lock = Lock()

    def authenticate(self) -> str:
        with self._auth_lock:
            if self._uid is None:
                uid = self._call("common", "authenticate", self.database, self.login, self.api_key, {})
                if isinstance(uid, bool) or not isinstance(uid, int) or uid <= 0:
                    raise RemoteUnavailable("Credenciales ERP rechazadas.", code="erp_auth_failed")
                self._uid = uid
                _LOGGER.info(
                    "erp_authenticated",
                    extra={"erp_database": self.database, "erp_login": self.login, "erp_uid": uid},
                )
            return str(self._uid)

    def list(self, kind: str, filter: Mapping[str, Any] | None = None) -> List[ExternalEntity]:
        require_entity_kind(kind)
        criteria = dict(filter or {})
        limit = criteria.pop("limit", None)

        domain = [list(term) for term in DEFAULT_DOMAIN.get(kind, [])]
        domain.extend([field, "=", value] for field, value in sorted(criteria.items()))
        options: Dict[str, Any] = {"fields": FIELDS_BY_KIND[kind], "order": "id asc"}
        if limit:
            options["limit"] = int(limit)
        if kind in DEFAULT_CONTEXT:
            options["context"] = dict(DEFAULT_CONTEXT[kind])

        rows = self._execute_kw(kind, "search_read", [domain], options)
        if not isinstance(rows, list):
            raise RemoteUnavailable("Respuesta inesperada del ERP en search_read.", code="erp_bad_response")
        return [
            ExternalEntity(external_id=row.get("id"), attributes=flatten_record(row))
            for row in rows
            if isinstance(row, dict)
        ]

    def create(self, kind: str, attributes: Mapping[str, Any]) -> int:
        require_entity_kind(kind)
        result = self._execute_kw(kind, "create", [dict(attributes)])
        if isinstance(result, list) and len(result) == 1:
            result = result[0]
        if isinstance(result, bool) or not isinstance(result, int) or result <= 0:
            raise RemoteUnavailable("El ERP no devolvio el id del registro creado.", code="erp_bad_response")
        return result

    def update(self, kind: str, external_id: int, attributes: Mapping[str, Any]) -> None:
        require_entity_kind(kind)
        result = self._execute_kw(kind, "write", [[int(external_id)], dict(attributes)])
        if result is not True:
            raise RemoteRejected("El ERP no confirmo la escritura.", code="erp_write_refused")

    def _execute_kw(self, kind: str, method: str, args: list, options: dict | None = None) -> object:
        uid = int(self.authenticate())
        try:
            return self._call(
                "object",
                "execute_kw",
                self.database,
                uid,
                self.api_key,
                MODEL_BY_KIND[kind],
                method,
                args,
                options or {},
            )
        except RemoteUnavailable as exc:
            if exc.code == "erp_access_denied":
                with self._auth_lock:
                    self._uid = None
            raise

    def _call(self, service: str, method: str, *args: object) -> object:
        if self.breaker is not None:
            allowed, state = self.breaker.before_call()
            if not allowed:
                raise RemoteUnavailable(f"Circuito ERP abierto ({state}).", code="erp_circuit_open")
        try:
            result = self.client.call(service, method, *args)
        except ErpError as exc:
            failure = classify_erp_error(exc)
            if self.breaker is not None:
                if isinstance(failure, RemoteUnavailable):
                    self.breaker.record_failure()
                else:
                    self.breaker.record_success()
            raise failure from exc
        if self.breaker is not None:
            self.breaker.record_success()
        return result
