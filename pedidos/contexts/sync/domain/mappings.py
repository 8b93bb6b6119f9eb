from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Tuple

from pedidos.contexts.erp.domain.gateway import (
    CLIENT,
    ORDER,
    PRICE_LIST,
    PRICE_LIST_ITEM,
    PRODUCT,
    SALES_REP,
    require_entity_kind,
)


def to_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (dict, list, tuple, set)):
        raise ValueError(f"texto esperado, recibido {type(value).__name__}")
    text = str(value).strip()
    return text or None


def to_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise ValueError(f"booleano esperado, recibido {value!r}")


def to_float(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("numero esperado, recibido booleano")
    return float(value)


def to_int(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValueError(f"entero esperado, recibido {value!r}")
    return int(value)


ORDER_STATUS_MAP = {
    "draft": "draft",
    "sent": "confirmed",
    "sale": "processing",
    "done": "delivered",
    "cancel": "cancelled",
}

INVOICE_STATUS_MAP = {
    "no": "no",
    "to invoice": "to_invoice",
    "invoiced": "invoiced",
}


def to_order_status(value: Any) -> str:
    return ORDER_STATUS_MAP.get(to_text(value) or "", "draft")


def to_invoice_status(value: Any) -> str:
    return INVOICE_STATUS_MAP.get(to_text(value) or "", "no")


COMPUTE_PRICE_MODES = ("fixed", "percentage", "formula")


def to_compute_price(value: Any) -> str:
    mode = to_text(value)
    return mode if mode in COMPUTE_PRICE_MODES else "fixed"


@dataclass(frozen=True)
class FieldRule:
    """Copies one ERP attribute into one local column.

    `fallback` replaces a missing/None value; it may use `{external_id}`.
    """

    column: str
    source: str
    convert: Callable[[Any], Any] = to_text
    fallback: Any = None


@dataclass(frozen=True)
class ReferenceRule:
    """Resolves an ERP id into the local id of a record mirrored in `table`."""

    column: str
    source: str
    table: str
    required: bool = False


@dataclass(frozen=True)
class EntityMapping:
    kind: str
    table: str
    fields: Tuple[FieldRule, ...]
    references: Tuple[ReferenceRule, ...] = ()
    # Local-only columns filled once on insert and never touched by updates.
    insert_defaults: Dict[str, Any] = field(default_factory=dict)
    uses_store: bool = True


ENTITY_MAPPINGS: Dict[str, EntityMapping] = {
    PRICE_LIST: EntityMapping(
        kind=PRICE_LIST,
        table="price_lists",
        fields=(
            FieldRule("name", "name", fallback="Sin nombre"),
            FieldRule("active", "active", to_bool, fallback=True),
            FieldRule("currency", "currency_id_name"),
        ),
        insert_defaults={"type": "normal", "discount_percentage": 0},
    ),
    SALES_REP: EntityMapping(
        kind=SALES_REP,
        table="sales_reps",
        fields=(
            FieldRule("name", "name", fallback="Sin nombre"),
            FieldRule("login", "login"),
            FieldRule("email", "email"),
            FieldRule("active", "active", to_bool, fallback=True),
        ),
        uses_store=False,
    ),
    PRODUCT: EntityMapping(
        kind=PRODUCT,
        table="products",
        fields=(
            FieldRule("name", "name", fallback="Sin nombre"),
            FieldRule("description", "description_sale"),
            FieldRule("list_price", "list_price", to_float, fallback=0.0),
            FieldRule("stock_level", "qty_available", to_float, fallback=0.0),
            FieldRule("category", "categ_id_name"),
            FieldRule("uom", "uom_id_name", fallback="kg"),
            FieldRule("active", "active", to_bool, fallback=True),
        ),
    ),
    CLIENT: EntityMapping(
        kind=CLIENT,
        table="clients",
        fields=(
            FieldRule("name", "name", fallback="Sin nombre"),
            FieldRule("email", "email"),
            FieldRule("phone", "phone"),
            FieldRule("street", "street"),
            FieldRule("city", "city"),
            FieldRule("state", "state_id_name"),
            FieldRule("zip", "zip"),
            FieldRule("odoo_pricelist_id", "property_product_pricelist", to_int),
        ),
        references=(ReferenceRule("pricelist_id", "property_product_pricelist", "price_lists"),),
    ),
    ORDER: EntityMapping(
        kind=ORDER,
        table="orders",
        fields=(
            FieldRule("order_number", "name", fallback="ORD-{external_id}"),
            FieldRule("status", "state", to_order_status),
            FieldRule("invoice_status", "invoice_status", to_invoice_status),
            FieldRule("subtotal", "amount_untaxed", to_float, fallback=0.0),
            FieldRule("tax", "amount_tax", to_float, fallback=0.0),
            FieldRule("total", "amount_total", to_float, fallback=0.0),
            FieldRule("order_date", "date_order"),
        ),
        references=(ReferenceRule("client_id", "partner_id", "clients", required=True),),
    ),
    PRICE_LIST_ITEM: EntityMapping(
        kind=PRICE_LIST_ITEM,
        table="price_list_items",
        fields=(
            FieldRule("category", "categ_id_name"),
            FieldRule("min_quantity", "min_quantity", to_float, fallback=0.0),
            FieldRule("date_start", "date_start"),
            FieldRule("date_end", "date_end"),
            FieldRule("compute_price", "compute_price", to_compute_price),
            FieldRule("fixed_price", "fixed_price", to_float, fallback=0.0),
            FieldRule("percent_price", "percent_price", to_float, fallback=0.0),
        ),
        references=(
            ReferenceRule("price_list_id", "pricelist_id", "price_lists", required=True),
            # Category-wide rules carry no product.
            ReferenceRule("product_id", "product_id", "products"),
        ),
        uses_store=False,
    ),
}


def mapping_for(kind: str) -> EntityMapping:
    return ENTITY_MAPPINGS[require_entity_kind(kind)]


# Kinds in one wave only reference kinds from earlier waves.
SYNC_WAVES: Tuple[Tuple[str, ...], ...] = (
    (PRICE_LIST, SALES_REP, PRODUCT),
    (CLIENT, PRICE_LIST_ITEM),
    (ORDER,),
)
