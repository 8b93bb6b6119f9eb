import http.client
import io
import json
import unittest
import urllib.error
from unittest import mock

from pedidos.contexts.erp.domain.gateway import (
    CLIENT,
    ORDER,
    PRICE_LIST,
    PRICE_LIST_ITEM,
    PRODUCT,
    RemoteRejected,
    RemoteUnavailable,
)
from pedidos.contexts.erp.infrastructure.circuit_breaker import OPEN, ErpCircuitBreaker
from pedidos.contexts.erp.infrastructure.client import ErpError, OdooJsonRpcClient
from pedidos.contexts.erp.infrastructure.mock import MockErpGateway
from pedidos.contexts.erp.infrastructure.odoo_gateway import OdooErpGateway, classify_erp_error, flatten_record
from pedidos.contexts.erp.interfaces.runtime import build_erp_gateway


class _StubClient:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def call(self, service, method, *args):
        self.calls.append((service, method, args))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class _FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


def _gateway(client, breaker=None):
    return OdooErpGateway(client, database="frutas", login="sync@frutas.example", api_key="key", breaker=breaker)


class FlattenRecordTest(unittest.TestCase):
    def test_many2one_and_false_placeholders(self):
        attributes = flatten_record(
            {
                "id": 41,
                "name": "Restaurante El Puerto",
                "email": False,
                "state_id": False,
                "property_product_pricelist": [2, "Tarifa Hosteleria"],
                "active": False,
            }
        )

        self.assertNotIn("id", attributes)
        self.assertIsNone(attributes["email"])
        self.assertIsNone(attributes["state_id"])
        self.assertIsNone(attributes["state_id_name"])
        self.assertEqual(attributes["property_product_pricelist"], 2)
        self.assertEqual(attributes["property_product_pricelist_name"], "Tarifa Hosteleria")
        self.assertIs(attributes["active"], False)


class ClassifyErpErrorTest(unittest.TestCase):
    def test_fault_names_map_to_gateway_errors(self):
        rejected = classify_erp_error(ErpError("bad", fault_name="odoo.exceptions.ValidationError"))
        self.assertIsInstance(rejected, RemoteRejected)
        self.assertEqual(rejected.code, "odoo_ValidationError")

        denied = classify_erp_error(ErpError("denied", fault_name="odoo.exceptions.AccessDenied"))
        self.assertIsInstance(denied, RemoteUnavailable)
        self.assertEqual(denied.code, "erp_access_denied")

        server = classify_erp_error(ErpError("boom", fault_name="builtins.KeyError"))
        self.assertEqual(server.code, "erp_server_error")

        transport = classify_erp_error(ErpError("timeout"))
        self.assertIsInstance(transport, RemoteUnavailable)
        self.assertEqual(transport.code, "erp_transport_error")


class OdooErpGatewayTest(unittest.TestCase):
    def test_authenticate_caches_uid(self):
        client = _StubClient(7)
        gateway = _gateway(client)

        self.assertEqual(gateway.authenticate(), "7")
        self.assertEqual(gateway.authenticate(), "7")
        self.assertEqual(len(client.calls), 1)
        self.assertEqual(client.calls[0][:2], ("common", "authenticate"))

    def test_authenticate_rejects_false_uid(self):
        gateway = _gateway(_StubClient(False))

        with self.assertRaises(RemoteUnavailable) as ctx:
            gateway.authenticate()
        self.assertEqual(ctx.exception.code, "erp_auth_failed")

    def test_list_builds_domain_and_flattens_rows(self):
        rows = [{"id": 11, "name": "Tomate pera", "categ_id": [3, "Hortalizas"], "description_sale": False}]
        client = _StubClient(7, rows)

        entities = _gateway(client).list(PRODUCT, {"categ_id": 3, "limit": 50})

        _service, method, args = client.calls[1]
        self.assertEqual(method, "execute_kw")
        self.assertEqual(args[3:5], ("product.product", "search_read"))
        self.assertEqual(args[5], [[["active", "=", True], ["categ_id", "=", 3]]])
        self.assertEqual(args[6]["limit"], 50)
        self.assertEqual(args[6]["order"], "id asc")
        self.assertEqual(entities[0].external_id, 11)
        self.assertEqual(entities[0].attributes["categ_id_name"], "Hortalizas")
        self.assertIsNone(entities[0].attributes["description_sale"])

    def test_price_lists_include_archived(self):
        client = _StubClient(7, [])

        _gateway(client).list(PRICE_LIST)

        options = client.calls[1][2][6]
        self.assertEqual(options["context"], {"active_test": False})

    def test_price_list_rules_read_pricelist_items(self):
        rows = [
            {
                "id": 72,
                "pricelist_id": [2, "Tarifa Hosteleria"],
                "product_id": False,
                "categ_id": [4, "Citricos"],
                "compute_price": "percentage",
                "percent_price": 5.0,
            }
        ]
        client = _StubClient(7, rows)

        entities = _gateway(client).list(PRICE_LIST_ITEM, {"pricelist_id": 2})

        args = client.calls[1][2]
        self.assertEqual(args[3:5], ("product.pricelist.item", "search_read"))
        self.assertEqual(args[5], [[["pricelist_id", "=", 2]]])
        self.assertEqual(args[6]["context"], {"active_test": False})
        self.assertIn("fixed_price", args[6]["fields"])
        attributes = entities[0].attributes
        self.assertEqual(attributes["pricelist_id"], 2)
        self.assertIsNone(attributes["product_id"])
        self.assertEqual(attributes["categ_id_name"], "Citricos")

    def test_unexpected_list_shape_is_unavailable(self):
        with self.assertRaises(RemoteUnavailable) as ctx:
            _gateway(_StubClient(7, {"rows": []})).list(PRODUCT)
        self.assertEqual(ctx.exception.code, "erp_bad_response")

    def test_create_returns_new_id(self):
        client = _StubClient(7, [55])

        self.assertEqual(_gateway(client).create(PRICE_LIST, {"name": "Nueva"}), 55)
        self.assertEqual(client.calls[1][2][5], [{"name": "Nueva"}])

    def test_update_requires_confirmation(self):
        client = _StubClient(7, True, False)
        gateway = _gateway(client)

        gateway.update(CLIENT, 41, {"property_product_pricelist": 2})
        self.assertEqual(client.calls[1][2][4:6], ("write", [[41], {"property_product_pricelist": 2}]))

        with self.assertRaises(RemoteRejected) as ctx:
            gateway.update(CLIENT, 41, {"property_product_pricelist": 3})
        self.assertEqual(ctx.exception.code, "erp_write_refused")

    def test_access_denied_drops_cached_session(self):
        client = _StubClient(
            7,
            ErpError("session expired", fault_name="odoo.exceptions.AccessDenied"),
            8,
            [],
        )
        gateway = _gateway(client)

        with self.assertRaises(RemoteUnavailable):
            gateway.list(PRODUCT)
        gateway.list(PRODUCT)

        self.assertEqual([call[1] for call in client.calls], ["authenticate", "execute_kw", "authenticate", "execute_kw"])
        self.assertEqual(client.calls[3][2][1], 8)

    def test_rejections_do_not_open_the_circuit(self):
        breaker = ErpCircuitBreaker(clock=lambda: 100.0)
        breaker.configure(min_samples=2, error_rate_threshold=0.5)
        client = _StubClient(7, *[ErpError("bad", fault_name="ValidationError")] * 3)
        gateway = _gateway(client, breaker)

        for _ in range(3):
            with self.assertRaises(RemoteRejected):
                gateway.update(CLIENT, 41, {"name": ""})

        self.assertEqual(breaker.snapshot()["failures"], 0)

    def test_open_circuit_fails_fast(self):
        breaker = ErpCircuitBreaker(clock=lambda: 100.0)
        breaker.configure(min_samples=2, error_rate_threshold=0.5, open_seconds=30)
        client = _StubClient(ErpError("down"), ErpError("down"))
        gateway = _gateway(client, breaker)

        for _ in range(2):
            with self.assertRaises(RemoteUnavailable):
                gateway.authenticate()
        self.assertEqual(breaker.snapshot()["state"], OPEN)

        with self.assertRaises(RemoteUnavailable) as ctx:
            gateway.authenticate()
        self.assertEqual(ctx.exception.code, "erp_circuit_open")
        self.assertEqual(len(client.calls), 2)


class OdooJsonRpcClientTest(unittest.TestCase):
    def test_call_posts_jsonrpc_envelope(self):
        client = OdooJsonRpcClient("https://erp.example/", timeout=5)
        body = json.dumps({"jsonrpc": "2.0", "id": 1, "result": 7}).encode("utf-8")

        with mock.patch("urllib.request.urlopen", return_value=_FakeResponse(body)) as urlopen:
            self.assertEqual(client.call("common", "authenticate", "frutas", "login", "key", {}), 7)

        request = urlopen.call_args.args[0]
        self.assertEqual(request.full_url, "https://erp.example/jsonrpc")
        sent = json.loads(request.data.decode("utf-8"))
        self.assertEqual(sent["params"], {"service": "common", "method": "authenticate", "args": ["frutas", "login", "key", {}]})
        self.assertEqual(urlopen.call_args.kwargs["timeout"], 5)

    def test_jsonrpc_error_carries_fault_name(self):
        client = OdooJsonRpcClient("https://erp.example")
        body = json.dumps(
            {
                "jsonrpc": "2.0",
                "id": 1,
                "error": {
                    "code": 200,
                    "message": "Odoo Server Error",
                    "data": {"name": "odoo.exceptions.ValidationError", "message": "Nombre obligatorio"},
                },
            }
        ).encode("utf-8")

        with mock.patch("urllib.request.urlopen", return_value=_FakeResponse(body)):
            with self.assertRaises(ErpError) as ctx:
                client.call("object", "execute_kw")
        self.assertEqual(ctx.exception.fault_name, "odoo.exceptions.ValidationError")
        self.assertEqual(str(ctx.exception), "Nombre obligatorio")

    def test_transport_failures_become_erp_errors(self):
        client = OdooJsonRpcClient("https://erp.example")

        with mock.patch("urllib.request.urlopen", side_effect=urllib.error.URLError("refused")):
            with self.assertRaises(ErpError) as ctx:
                client.call("common", "version")
        self.assertIsNone(ctx.exception.fault_name)

        with mock.patch("urllib.request.urlopen", return_value=_FakeResponse(b"<html>")):
            with self.assertRaises(ErpError):
                client.call("common", "version")

        dropped = (
            http.client.RemoteDisconnected("closed"),
            http.client.IncompleteRead(b"{\"jsonrpc\""),
            ConnectionResetError(104, "reset by peer"),
        )
        for failure in dropped:
            with self.subTest(failure=type(failure).__name__):
                with mock.patch("urllib.request.urlopen", side_effect=failure):
                    with self.assertRaises(ErpError):
                        client.call("common", "version")

    def test_dropped_connection_is_unavailable_for_the_gateway(self):
        gateway = _gateway(OdooJsonRpcClient("https://erp.example"), breaker=ErpCircuitBreaker())

        with mock.patch("urllib.request.urlopen", side_effect=http.client.RemoteDisconnected("closed")):
            with self.assertRaises(RemoteUnavailable) as ctx:
                gateway.authenticate()
        self.assertEqual(ctx.exception.code, "erp_transport_error")

    def test_missing_url_is_rejected(self):
        with self.assertRaises(ErpError):
            OdooJsonRpcClient("")


class MockErpGatewayTest(unittest.TestCase):
    def test_update_validates_price_list(self):
        gateway = MockErpGateway()

        gateway.update(CLIENT, 41, {"property_product_pricelist": 1})
        client = gateway.list(CLIENT, {"property_product_pricelist": 1})
        self.assertEqual([item.external_id for item in client], [41, 42])

        with self.assertRaises(RemoteRejected):
            gateway.update(CLIENT, 41, {"property_product_pricelist": 999})
        with self.assertRaises(RemoteRejected):
            gateway.update(CLIENT, 999, {"name": "Nadie"})

    def test_create_requires_name(self):
        gateway = MockErpGateway()

        new_id = gateway.create(PRICE_LIST, {"name": "Tarifa Verano", "active": True})
        self.assertEqual(new_id, 4)
        with self.assertRaises(RemoteRejected):
            gateway.create(PRICE_LIST, {"name": "  "})

    def test_create_sale_order_computes_amounts(self):
        gateway = MockErpGateway()
        lines = [
            [0, 0, {"product_id": 11, "product_uom_qty": 10, "price_unit": 1.85}],
            [0, 0, {"product_id": 12, "product_uom_qty": 5, "price_unit": 1.2}],
        ]

        order_id = gateway.create(ORDER, {"partner_id": 41, "order_line": lines, "note": "Pedido desde App: A-1"})

        self.assertEqual(order_id, 503)
        created = gateway.list(ORDER, {"name": "S00503"})[0].attributes
        self.assertEqual(created["partner_id_name"], "Restaurante El Puerto")
        self.assertEqual(created["state"], "draft")
        self.assertEqual((created["amount_untaxed"], created["amount_tax"], created["amount_total"]), (24.5, 2.45, 26.95))

    def test_create_sale_order_rejects_bad_references(self):
        gateway = MockErpGateway()
        line = [0, 0, {"product_id": 11, "product_uom_qty": 1, "price_unit": 1.0}]

        for values in (
            {"partner_id": 999, "order_line": [line]},
            {"partner_id": 41, "order_line": []},
            {"partner_id": 41, "order_line": [[0, 0, {"product_id": 999, "product_uom_qty": 1}]]},
        ):
            with self.subTest(values=values):
                with self.assertRaises(RemoteRejected):
                    gateway.create(ORDER, values)
        self.assertEqual(len(gateway.list(ORDER)), 2)


class BuildErpGatewayTest(unittest.TestCase):
    def test_modes(self):
        self.assertIsInstance(build_erp_gateway({"ERP_MODE": "mock"}), MockErpGateway)
        with self.assertRaises(RuntimeError):
            build_erp_gateway({"ERP_MODE": "sap"})
        with self.assertRaises(RuntimeError):
            build_erp_gateway({"ERP_MODE": "odoo", "ODOO_URL": "https://erp.example"})

        gateway = build_erp_gateway(
            {
                "ERP_MODE": "odoo",
                "ODOO_URL": "https://erp.example",
                "ODOO_DB": "frutas",
                "ODOO_LOGIN": "sync",
                "ODOO_API_KEY": "key",
            }
        )
        self.assertIsInstance(gateway, OdooErpGateway)
        self.assertEqual(gateway.client.endpoint, "https://erp.example/jsonrpc")


if __name__ == "__main__":
    unittest.main()
