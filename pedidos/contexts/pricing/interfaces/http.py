from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from pedidos.contexts.erp.domain.gateway import RemoteUnavailable
from pedidos.contexts.pricing.application.service import AssignPricelistInput, PricelistAssignmentService
from pedidos.contexts.sync.domain.errors import LocalStoreError
from pedidos.errors import NotFoundError, NotReadyError
from pedidos.ui_strings import error_message, success_message


pricing_bp = Blueprint("pricing", __name__, url_prefix="/api")


def _service() -> PricelistAssignmentService:
    return current_app.extensions["pricelist_service"]


@pricing_bp.route("/clients/<int:client_id>", methods=["GET"])
def client_detail_api(client_id: int):
    result = _service().read_client(client_id)
    if not result.ready:
        raise NotReadyError(payload={"status": result.status})
    if result.value is None:
        raise NotFoundError(code="client_not_found", message_key="client_not_found")
    return jsonify({"status": result.status, "client": result.value})


@pricing_bp.route("/clients/<int:client_id>/pricelist", methods=["POST"])
def assign_pricelist_api(client_id: int):
    payload = request.get_json(silent=True) or {}
    data = AssignPricelistInput.from_payload(client_id, payload if isinstance(payload, dict) else {})
    result = _service().assign(data)

    if result.succeeded:
        message_key = "pricelist_assigned" if result.changed else "pricelist_unchanged"
        return jsonify(
            {
                "success": True,
                "client_id": result.client_id,
                "pricelist_id": result.pricelist_id,
                "state": result.state,
                "changed": result.changed,
                "message": success_message(message_key),
            }
        )

    if isinstance(result.error, RemoteUnavailable):
        code, http_status = "erp_unavailable", 502
    elif isinstance(result.error, LocalStoreError):
        code, http_status = "local_store_failed", 409
    else:
        code, http_status = "erp_rejected", 409
    return (
        jsonify(
            {
                "success": False,
                "error": code,
                "message": error_message(code),
                "retryable": True,
                "state": result.state,
            }
        ),
        http_status,
    )


@pricing_bp.route("/price-lists", methods=["POST"])
def create_price_list_api():
    payload = request.get_json(silent=True) or {}
    created = _service().create_price_list(payload.get("name") if isinstance(payload, dict) else None)
    return jsonify({"success": True, "price_list": created, "message": success_message("pricelist_created")}), 201


@pricing_bp.route("/price-lists/<int:pricelist_id>/rules", methods=["GET"])
def price_list_rules_api(pricelist_id: int):
    return jsonify(_service().list_rules(pricelist_id))
