from __future__ import annotations

import json
import secrets
from typing import Any, Dict, List

from flask import Blueprint, current_app, jsonify, request

from pedidos.contexts.erp.domain.gateway import ENTITY_KINDS, ORDER, ErpGatewayError
from pedidos.contexts.sync.application.orchestrator import DEFAULT_PUSH_LIMIT, ORDER_PUSH, SyncOrchestrator
from pedidos.contexts.sync.application.run_guard import SyncInProgress, SyncRunGuard
from pedidos.errors import IntegrationError, PermissionError, UserActionError, ValidationError, classify_erp_failure
from pedidos.ui_strings import error_message, success_message


sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")


KIND_ALIASES: Dict[str, str] = {
    "pricelist": "priceList",
    "pricelists": "priceList",
    "listas-precios": "priceList",
    "salesrep": "salesRep",
    "vendedores": "salesRep",
    "sales-reps": "salesRep",
    "product": "product",
    "products": "product",
    "productos": "product",
    "client": "client",
    "clientes": "client",
    "clients": "client",
    "order": "order",
    "pedidos": "order",
    "orders": "order",
    "pricelistitem": "priceListItem",
    "pricelistitems": "priceListItem",
    "price-list-items": "priceListItem",
    "reglas": "priceListItem",
    "reglas-tarifa": "priceListItem",
}

MAX_SYNC_LIMIT = 5000
MAX_PUSH_LIMIT = 100


def canonical_kind(value: object) -> str:
    raw = str(value or "").strip()
    if not raw:
        raise ValidationError(code="kind_required", message_key="kind_required")
    kind = KIND_ALIASES.get(raw.lower(), raw)
    if kind not in ENTITY_KINDS:
        raise ValidationError(
            code="kind_not_supported",
            message_key="kind_not_supported",
            payload={"kind": raw, "supported": list(ENTITY_KINDS)},
        )
    return kind


def _orchestrator() -> SyncOrchestrator:
    return current_app.extensions["sync_orchestrator"]


def _run_guard() -> SyncRunGuard:
    return current_app.extensions["sync_run_guard"]


def _require_trigger_token() -> None:
    expected = str(current_app.config.get("SYNC_TRIGGER_TOKEN") or "").strip()
    if not expected:
        return
    header = str(request.headers.get("Authorization") or "")
    provided = header[7:].strip() if header.lower().startswith("bearer ") else ""
    if not provided or not secrets.compare_digest(provided, expected):
        raise PermissionError(code="sync_token_invalid", message_key="sync_token_invalid", http_status=401)


def _parse_criteria(raw_filter: Any, raw_limit: Any, field: str = "filter") -> Dict[str, Any]:
    if raw_filter is None:
        criteria: Dict[str, Any] = {}
    elif isinstance(raw_filter, dict):
        criteria = dict(raw_filter)
    else:
        raise ValidationError(code="filter_invalid", message_key="filter_invalid", payload={"field": field})

    if raw_limit is not None:
        criteria["limit"] = _parse_limit(raw_limit, MAX_SYNC_LIMIT)
    return criteria


def _parse_limit(raw: Any, maximum: int) -> int:
    try:
        parsed = int(raw)
    except (TypeError, ValueError):
        parsed = 0
    if isinstance(raw, bool) or parsed < 1 or parsed > maximum:
        raise ValidationError(code="validation_error", message_key="action_invalid", payload={"field": "limit"})
    return parsed


def _parse_filter(payload: dict) -> Dict[str, Any]:
    raw = payload.get("filter")
    if raw is None and request.args.get("filter"):
        try:
            raw = json.loads(request.args["filter"])
        except json.JSONDecodeError:
            raw = request.args["filter"]
    return _parse_criteria(raw, payload.get("limit", request.args.get("limit")))


def _parse_filters_by_kind(payload: dict, kinds: List[str]) -> Dict[str, Dict[str, Any]]:
    """Per-kind criteria for a multi-kind run.

    A top-level `filter` or `limit` is only accepted when exactly one kind
    runs; field names differ between kinds.
    """
    shared = payload.get("filter") is not None or payload.get("limit") is not None
    raw = payload.get("filters")
    if shared and (raw is not None or len(kinds) > 1):
        raise ValidationError(
            code="filter_invalid",
            message_key="filter_ambiguous",
            payload={"field": "filter"},
        )
    if shared:
        return {kinds[0]: _parse_criteria(payload.get("filter"), payload.get("limit"))}
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValidationError(code="filter_invalid", message_key="filter_invalid", payload={"field": "filters"})

    filters: Dict[str, Dict[str, Any]] = {}
    for key, value in raw.items():
        kind = canonical_kind(key)
        if kind not in kinds:
            raise ValidationError(
                code="filter_invalid",
                message_key="filter_kind_not_requested",
                payload={"field": "filters", "kind": kind},
            )
        if not isinstance(value, dict):
            raise ValidationError(code="filter_invalid", message_key="filter_invalid", payload={"field": "filters"})
        criteria = dict(value)
        limit = criteria.pop("limit", None)
        filters[kind] = _parse_criteria(criteria, limit, field="filters")
    return filters


def _failure_payload(kind: str, exc: ErpGatewayError) -> tuple[Dict[str, Any], int]:
    code, message_key, http_status = classify_erp_failure(exc)
    return (
        {"success": False, "kind": kind, "error": code, "message": error_message(message_key)},
        http_status,
    )


def _success_payload(kind: str, summary) -> Dict[str, Any]:
    payload = summary.to_response_payload()
    payload["kind"] = kind
    payload["message"] = success_message("sync_completed", created=summary.created, updated=summary.updated)
    return payload


def _in_progress(payload: Dict[str, Any]) -> UserActionError:
    return UserActionError(
        code="sync_in_progress",
        message_key="sync_in_progress",
        http_status=409,
        payload=payload,
    )


def _integration_error(kind: str, exc: ErpGatewayError) -> IntegrationError:
    code, message_key, http_status = classify_erp_failure(exc)
    return IntegrationError(
        code=code,
        message_key=message_key,
        http_status=http_status,
        details=str(exc),
        payload={"success": False, "kind": kind},
    )


@sync_bp.route("/<string:kind>", methods=["GET", "POST"])
def run_sync_api(kind: str):
    _require_trigger_token()
    entity_kind = canonical_kind(kind)
    payload = request.get_json(silent=True) or {}
    criteria = _parse_filter(payload if isinstance(payload, dict) else {})

    try:
        with _run_guard().hold([entity_kind]):
            summary = _orchestrator().run_sync(entity_kind, criteria)
    except SyncInProgress as exc:
        raise _in_progress({"success": False, "kind": entity_kind}) from exc
    except ErpGatewayError as exc:
        raise _integration_error(entity_kind, exc) from exc

    return jsonify(_success_payload(entity_kind, summary))


@sync_bp.route("", methods=["POST"])
def run_sync_many_api():
    _require_trigger_token()
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        payload = {}

    raw_kinds = payload.get("kinds")
    if raw_kinds is None:
        kinds: List[str] = list(ENTITY_KINDS)
    elif isinstance(raw_kinds, list) and raw_kinds:
        kinds = list(dict.fromkeys(canonical_kind(item) for item in raw_kinds))
    else:
        raise ValidationError(code="kind_required", message_key="kind_required", payload={"field": "kinds"})
    filters = _parse_filters_by_kind(payload, kinds)

    try:
        with _run_guard().hold(kinds):
            outcomes = _orchestrator().run_many(kinds, filters)
    except SyncInProgress as exc:
        raise _in_progress({"success": False, "kinds": exc.kinds}) from exc

    results: Dict[str, Any] = {}
    for kind, outcome in outcomes.items():
        if isinstance(outcome, ErpGatewayError):
            results[kind], _status = _failure_payload(kind, outcome)
        else:
            results[kind] = _success_payload(kind, outcome)
    return jsonify({"success": all(item["success"] for item in results.values()), "results": results})


@sync_bp.route("/orders/push", methods=["POST"])
def push_orders_api():
    _require_trigger_token()
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        payload = {}
    raw_limit = payload.get("limit", request.args.get("limit"))
    limit = DEFAULT_PUSH_LIMIT if raw_limit is None else _parse_limit(raw_limit, MAX_PUSH_LIMIT)

    try:
        # Holding the order kind keeps an inbound order sync from racing the link-back.
        with _run_guard().hold([ORDER]):
            summary = _orchestrator().push_pending_orders(limit)
    except SyncInProgress as exc:
        raise _in_progress({"success": False, "kind": ORDER_PUSH}) from exc
    except ErpGatewayError as exc:
        raise _integration_error(ORDER_PUSH, exc) from exc

    body = summary.to_response_payload()
    body["kind"] = ORDER_PUSH
    body["message"] = success_message("orders_pushed", pushed=summary.created, errors=summary.errors)
    return jsonify(body)
