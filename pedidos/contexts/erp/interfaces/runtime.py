from __future__ import annotations

from typing import Mapping

from flask import Flask

from pedidos.contexts.erp.domain.gateway import ErpGateway
from pedidos.contexts.erp.infrastructure.circuit_breaker import get_erp_circuit_breaker


SUPPORTED_ERP_MODES = ("mock", "odoo")


def build_erp_gateway(config: Mapping) -> ErpGateway:
    mode = str(config.get("ERP_MODE") or "mock").strip().lower()
    if mode == "mock":
        from pedidos.contexts.erp.infrastructure.mock import MockErpGateway

        return MockErpGateway()
    if mode not in SUPPORTED_ERP_MODES:
        raise RuntimeError(f"ERP_MODE invalido: {mode}")

    from pedidos.contexts.erp.infrastructure.client import OdooJsonRpcClient
    from pedidos.contexts.erp.infrastructure.odoo_gateway import OdooErpGateway

    missing = [key for key in ("ODOO_URL", "ODOO_DB", "ODOO_LOGIN", "ODOO_API_KEY") if not config.get(key)]
    if missing:
        raise RuntimeError(f"Configuracion ERP incompleta: {', '.join(missing)}")

    breaker = get_erp_circuit_breaker()
    breaker.configure_from(config)
    client = OdooJsonRpcClient(
        str(config["ODOO_URL"]),
        timeout=int(config.get("ERP_TIMEOUT_SECONDS", 20) or 20),
        verify_ssl=bool(config.get("ERP_VERIFY_SSL", True)),
    )
    return OdooErpGateway(
        client,
        database=str(config["ODOO_DB"]),
        login=str(config["ODOO_LOGIN"]),
        api_key=str(config["ODOO_API_KEY"]),
        breaker=breaker,
    )


def init_erp_gateway(app: Flask, gateway: ErpGateway | None = None) -> ErpGateway:
    if gateway is None:
        gateway = app.extensions.get("erp_gateway") or build_erp_gateway(app.config)
    app.extensions["erp_gateway"] = gateway
    return gateway

