from __future__ import annotations

import copy
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
    require_entity_kind,
)


# Rows are stored already flattened, the way OdooErpGateway returns them.
ERP_DATA: Dict[str, List[dict]] = {
    PRICE_LIST: [
        {"id": 1, "name": "Tarifa General", "active": True, "currency_id": 1, "currency_id_name": "EUR"},
        {"id": 2, "name": "Tarifa Hosteleria", "active": True, "currency_id": 1, "currency_id_name": "EUR"},
        {"id": 3, "name": "Tarifa Mayorista 2025", "active": False, "currency_id": 1, "currency_id_name": "EUR"},
    ],
    SALES_REP: [
        {"id": 2, "name": "Lucia Ferrer", "login": "lucia@frutas.example", "email": "lucia@frutas.example", "active": True},
        {"id": 6, "name": "Andres Molina", "login": "andres@frutas.example", "email": None, "active": True},
    ],
    PRODUCT: [
        {
            "id": 11,
            "name": "Tomate pera",
            "description_sale": "Caja 6 kg",
            "list_price": 1.85,
            "qty_available": 420.0,
            "categ_id": 3,
            "categ_id_name": "Hortalizas",
            "uom_id": 12,
            "uom_id_name": "kg",
            "active": True,
        },
        {
            "id": 12,
            "name": "Naranja Valencia",
            "description_sale": None,
            "list_price": 1.2,
            "qty_available": 900.0,
            "categ_id": 4,
            "categ_id_name": "Citricos",
            "uom_id": 12,
            "uom_id_name": "kg",
            "active": True,
        },
        {
            "id": 13,
            "name": "Lechuga romana",
            "description_sale": None,
            "list_price": 0.75,
            "qty_available": 160.0,
            "categ_id": 3,
            "categ_id_name": "Hortalizas",
            "uom_id": 1,
            "uom_id_name": "Unidades",
            "active": True,
        },
    ],
    CLIENT: [
        {
            "id": 41,
            "name": "Restaurante El Puerto",
            "email": "compras@elpuerto.example",
            "phone": "+34 600 111 222",
            "street": "Calle del Muelle 4",
            "city": "Valencia",
            "state_id": 417,
            "state_id_name": "Valencia",
            "zip": "46011",
            "property_product_pricelist": 2,
            "property_product_pricelist_name": "Tarifa Hosteleria",
        },
        {
            "id": 42,
            "name": "Fruteria La Huerta",
            "email": None,
            "phone": "+34 600 333 444",
            "street": None,
            "city": "Alzira",
            "state_id": None,
            "state_id_name": None,
            "zip": None,
            "property_product_pricelist": 1,
            "property_product_pricelist_name": "Tarifa General",
        },
    ],
    ORDER: [
        {
            "id": 501,
            "name": "S00501",
            "partner_id": 41,
            "partner_id_name": "Restaurante El Puerto",
            "state": "sale",
            "invoice_status": "to invoice",
            "amount_untaxed": 120.5,
            "amount_tax": 12.05,
            "amount_total": 132.55,
            "date_order": "2026-01-12 07:30:00",
        },
        {
            "id": 502,
            "name": "S00502",
            "partner_id": 42,
            "partner_id_name": "Fruteria La Huerta",
            "state": "draft",
            "invoice_status": "no",
            "amount_untaxed": 48.0,
            "amount_tax": 4.8,
            "amount_total": 52.8,
            "date_order": "2026-01-13 08:10:00",
        },
    ],
    PRICE_LIST_ITEM: [
        {
            "id": 71,
            "pricelist_id": 2,
            "pricelist_id_name": "Tarifa Hosteleria",
            "product_id": 11,
            "product_id_name": "Tomate pera",
            "categ_id": None,
            "categ_id_name": None,
            "min_quantity": 10.0,
            "date_start": None,
            "date_end": None,
            "compute_price": "fixed",
            "fixed_price": 1.6,
            "percent_price": 0.0,
        },
        {
            "id": 72,
            "pricelist_id": 2,
            "pricelist_id_name": "Tarifa Hosteleria",
            "product_id": None,
            "product_id_name": None,
            "categ_id": 4,
            "categ_id_name": "Citricos",
            "min_quantity": 0.0,
            "date_start": "2026-01-01 00:00:00",
            "date_end": "2026-06-30 23:59:59",
            "compute_price": "percentage",
            "fixed_price": 0.0,
            "percent_price": 5.0,
        },
        {
            "id": 73,
            "pricelist_id": 1,
            "pricelist_id_name": "Tarifa General",
            "product_id": 13,
            "product_id_name": "Lechuga romana",
            "categ_id": None,
            "categ_id_name": None,
            "min_quantity": 0.0,
            "date_start": None,
            "date_end": None,
            "compute_price": "fixed",
            "fixed_price": 0.7,
            "percent_price": 0.0,
        },
    ],
}

# Kinds whose records Odoo refuses to create without a name.
NAMED_KINDS = frozenset({PRICE_LIST, SALES_REP, PRODUCT, CLIENT})

MOCK_TAX_RATE = 0.10


class MockErpGateway(ErpGateway):
    """In-memory ERP with the same contract and rejection rules as Odoo."""

    def __init__(self, data: Mapping[str, List[dict]] | None = None) -> None:
        self._lock = Lock()
        self._rows: Dict[str, List[dict]] = copy.deepcopy(dict(data if data is not None else ERP_DATA))

    def authenticate(self) -> str:
        return "mock-session"

    def list(self, kind: str, filter: Mapping[str, Any] | None = None) -> List[ExternalEntity]:
        require_entity_kind(kind)
        criteria = dict(filter or {})
        limit = criteria.pop("limit", None)
        with self._lock:
            rows = [
                row
                for row in sorted(self._rows.get(kind, []), key=lambda item: item["id"])
                if all(row.get(field) == value for field, value in criteria.items())
            ]
            if limit:
                rows = rows[: int(limit)]
            return [
                ExternalEntity(
                    external_id=row["id"],
                    attributes={key: value for key, value in row.items() if key != "id"},
                )
                for row in copy.deepcopy(rows)
            ]

    def create(self, kind: str, attributes: Mapping[str, Any]) -> int:
        require_entity_kind(kind)
        values = dict(attributes)
        if kind in NAMED_KINDS and not str(values.get("name") or "").strip():
            raise RemoteRejected("El campo name es obligatorio.", code="odoo_ValidationError")
        with self._lock:
            rows = self._rows.setdefault(kind, [])
            external_id = max((row["id"] for row in rows), default=0) + 1
            if kind == ORDER:
                values = self._sale_order(external_id, values)
            values["id"] = external_id
            rows.append(values)
            return external_id

    def _sale_order(self, external_id: int, values: Dict[str, Any]) -> Dict[str, Any]:
        """Validate a `sale.order` create and fill what Odoo would compute."""
        partner = self._find(CLIENT, values.get("partner_id"))
        if partner is None:
            raise RemoteRejected("El cliente del pedido no existe.", code="odoo_ValidationError")
        lines = values.pop("order_line", None) or []
        if not lines:
            raise RemoteRejected("El pedido no tiene lineas.", code="odoo_ValidationError")

        subtotal = 0.0
        for command in lines:
            line = command[2] if isinstance(command, (list, tuple)) and len(command) == 3 else {}
            if self._find(PRODUCT, line.get("product_id")) is None:
                raise RemoteRejected("Producto inexistente en la linea.", code="odoo_ValidationError")
            subtotal += float(line.get("product_uom_qty") or 0) * float(line.get("price_unit") or 0)

        subtotal = round(subtotal, 2)
        tax = round(subtotal * MOCK_TAX_RATE, 2)
        values.update(
            {
                "name": f"S{external_id:05d}",
                "partner_id_name": partner.get("name"),
                "state": "draft",
                "invoice_status": "no",
                "amount_untaxed": subtotal,
                "amount_tax": tax,
                "amount_total": round(subtotal + tax, 2),
                "date_order": values.get("date_order"),
            }
        )
        return values

    def update(self, kind: str, external_id: int, attributes: Mapping[str, Any]) -> None:
        require_entity_kind(kind)
        with self._lock:
            row = self._find(kind, external_id)
            if row is None:
                raise RemoteRejected(f"Registro {external_id} inexistente.", code="odoo_MissingError")
            values = dict(attributes)
            pricelist_id = values.get("property_product_pricelist")
            if pricelist_id is not None:
                pricelist = self._find(PRICE_LIST, pricelist_id)
                if pricelist is None:
                    raise RemoteRejected("La tarifa indicada no existe.", code="odoo_ValidationError")
                values["property_product_pricelist_name"] = pricelist.get("name")
            row.update(values)

    def _find(self, kind: str, external_id: int) -> dict | None:
        for row in self._rows.get(kind, []):
            if row["id"] == external_id:
                return row
        return None
