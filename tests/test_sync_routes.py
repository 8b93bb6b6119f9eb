import unittest
from unittest import mock

from pedidos import create_app
from pedidos.config import Config
from pedidos.contexts.erp.domain.gateway import (
    CLIENT,
    ORDER,
    PRICE_LIST,
    PRICE_LIST_ITEM,
    PRODUCT,
    RemoteRejected,
    RemoteUnavailable,
)
from pedidos.contexts.erp.infrastructure.circuit_breaker import reset_erp_circuit_breaker_for_tests
from pedidos.contexts.erp.infrastructure.mock import MockErpGateway
from pedidos.db import close_db
from pedidos.observability import reset_metrics_for_tests
from pedidos.ui_strings import error_message
from tests.helpers.erp_fakes import ScriptedErpGateway, entity
from tests.helpers.temp_db import TempDbSandbox


class SyncRoutesTest(unittest.TestCase):
    def _build_app(self, gateway=None, **config_overrides):
        temp_db = TempDbSandbox(prefix="sync_routes")
        TempConfig = temp_db.make_config(Config, TESTING=True, **config_overrides)
        app = create_app(TempConfig, erp_gateway=gateway or MockErpGateway())
        return temp_db, app

    def setUp(self) -> None:
        self._temp_db, self.app = self._build_app()
        self.client = self.app.test_client()
        reset_metrics_for_tests()
        reset_erp_circuit_breaker_for_tests()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_metrics_for_tests()
        reset_erp_circuit_breaker_for_tests()

    def _rebuild(self, gateway=None, **config_overrides):
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        self._temp_db, self.app = self._build_app(gateway, **config_overrides)
        self.client = self.app.test_client()

    def _count(self, table: str) -> int:
        db = self._temp_db.connect()
        try:
            return int(db.execute(f"SELECT COUNT(*) AS total FROM {table}").fetchone()["total"])
        finally:
            db.close()

    def test_sync_price_lists_then_rerun(self):
        first = self.client.post("/api/sync/priceList")
        self.assertEqual(first.status_code, 200)
        body = first.get_json()
        self.assertTrue(body["success"])
        self.assertEqual(body["kind"], PRICE_LIST)
        self.assertEqual(body["stats"], {"created": 3, "updated": 0, "errors": 0, "total": 3})
        self.assertNotIn("errorDetails", body)

        second = self.client.get("/api/sync/listas-precios")
        self.assertEqual(second.status_code, 200)
        self.assertEqual(second.get_json()["stats"], {"created": 0, "updated": 3, "errors": 0, "total": 3})
        self.assertEqual(self._count("price_lists"), 3)

    def test_error_details_reported_for_malformed_items(self):
        gateway = ScriptedErpGateway({PRICE_LIST: [entity(10, name="Standard"), entity("??", name="Rota")]})
        self._rebuild(gateway)

        res = self.client.post("/api/sync/priceList")

        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertTrue(body["success"])
        self.assertEqual(body["stats"]["errors"], 1)
        self.assertEqual(body["errorDetails"][0]["external_id"], "??")

    def test_unknown_kind_is_rejected(self):
        res = self.client.post("/api/sync/facturas")

        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "kind_not_supported")
        self.assertIn(PRICE_LIST, res.get_json()["supported"])

    def test_filter_and_limit_are_validated(self):
        bad_filter = self.client.post("/api/sync/product", json={"filter": ["active"]})
        self.assertEqual(bad_filter.status_code, 400)
        self.assertEqual(bad_filter.get_json()["error"], "filter_invalid")

        bad_limit = self.client.post("/api/sync/product", json={"limit": 0})
        self.assertEqual(bad_limit.status_code, 400)

        limited = self.client.post("/api/sync/product", json={"filter": {"categ_id": 3}, "limit": 1})
        self.assertEqual(limited.status_code, 200)
        self.assertEqual(limited.get_json()["stats"]["total"], 1)

    def test_filter_from_query_string(self):
        res = self.client.get("/api/sync/product", query_string={"filter": '{"categ_id": 3}'})

        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["stats"]["created"], 2)

    def test_unavailable_erp_returns_502_and_leaves_store_untouched(self):
        gateway = ScriptedErpGateway()
        gateway.list_errors[PRICE_LIST] = RemoteUnavailable("timeout", code="erp_transport_error")
        self._rebuild(gateway)

        res = self.client.post("/api/sync/priceList")

        self.assertEqual(res.status_code, 502)
        body = res.get_json()
        self.assertFalse(body["success"])
        self.assertEqual(body["error"], "erp_unavailable")
        self.assertEqual(body["kind"], PRICE_LIST)
        self.assertEqual(body["message"], error_message("erp_unavailable"))
        self.assertTrue(body["request_id"])
        self.assertEqual(self._count("price_lists"), 0)

    def test_rejected_listing_returns_422(self):
        gateway = ScriptedErpGateway()
        gateway.list_errors[PRODUCT] = RemoteRejected("denied", code="odoo_AccessError")
        self._rebuild(gateway)

        res = self.client.post("/api/sync/product")

        self.assertEqual(res.status_code, 422)
        self.assertEqual(res.get_json()["error"], "erp_rejected")

    def test_concurrent_run_for_same_kind_is_refused(self):
        guard = self.app.extensions["sync_run_guard"]
        with guard.hold([PRODUCT]):
            res = self.client.post("/api/sync/product")
            other = self.client.post("/api/sync/priceList")

        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "sync_in_progress")
        self.assertEqual(other.status_code, 200)

    def test_trigger_token_required_when_configured(self):
        self._rebuild(SYNC_TRIGGER_TOKEN="secreto")

        missing = self.client.post("/api/sync/priceList")
        self.assertEqual(missing.status_code, 401)
        self.assertEqual(missing.get_json()["error"], "sync_token_invalid")

        wrong = self.client.post("/api/sync/priceList", headers={"Authorization": "Bearer otro"})
        self.assertEqual(wrong.status_code, 401)

        ok = self.client.post("/api/sync/priceList", headers={"Authorization": "Bearer secreto"})
        self.assertEqual(ok.status_code, 200)

    def test_sync_many_runs_requested_kinds(self):
        res = self.client.post("/api/sync", json={"kinds": ["clients", "priceList", "order"]})

        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertTrue(body["success"])
        self.assertEqual(set(body["results"]), {"client", "priceList", "order"})
        self.assertEqual(body["results"]["order"]["stats"]["created"], 2)
        self.assertEqual(body["results"]["order"]["stats"]["errors"], 0)

    def test_sync_many_reports_per_kind_failures(self):
        gateway = ScriptedErpGateway({PRODUCT: [entity(11, name="Tomate")]})
        gateway.list_errors[PRICE_LIST] = RemoteUnavailable("down", code="erp_transport_error")
        self._rebuild(gateway)

        res = self.client.post("/api/sync", json={"kinds": [PRICE_LIST, PRODUCT]})

        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertFalse(body["success"])
        self.assertEqual(body["results"][PRICE_LIST]["error"], "erp_unavailable")
        self.assertEqual(body["results"][PRICE_LIST]["message"], error_message("erp_unavailable"))
        self.assertFalse(body["results"][PRICE_LIST]["success"])
        self.assertTrue(body["results"][PRODUCT]["success"])

    def test_sync_many_requires_kind_list(self):
        res = self.client.post("/api/sync", json={"kinds": "priceList"})

        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "kind_required")


    def test_sync_many_applies_filters_per_kind(self):
        res = self.client.post(
            "/api/sync",
            json={
                "kinds": ["product", "client"],
                "filters": {"productos": {"categ_id": 3}, "client": {"limit": 1}},
            },
        )

        self.assertEqual(res.status_code, 200)
        results = res.get_json()["results"]
        self.assertEqual(results[PRODUCT]["stats"]["total"], 2)
        self.assertEqual(results[CLIENT]["stats"]["total"], 1)

    def test_sync_many_rejects_shared_filter_for_several_kinds(self):
        for body in (
            {"kinds": ["product", "client"], "filter": {"categ_id": 3}},
            {"kinds": ["product", "client"], "limit": 10},
            {"filter": {"active": True}},
        ):
            with self.subTest(body=body):
                res = self.client.post("/api/sync", json=body)
                self.assertEqual(res.status_code, 400)
                self.assertEqual(res.get_json()["error"], "filter_invalid")
        self.assertEqual(self._count("products"), 0)

    def test_sync_many_single_kind_keeps_top_level_filter(self):
        res = self.client.post("/api/sync", json={"kinds": ["product"], "filter": {"categ_id": 3}, "limit": 1})

        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["results"][PRODUCT]["stats"]["total"], 1)

    def test_sync_many_validates_per_kind_filters(self):
        unrequested = self.client.post("/api/sync", json={"kinds": ["product"], "filters": {"client": {}}})
        self.assertEqual(unrequested.status_code, 400)
        self.assertEqual(unrequested.get_json()["kind"], CLIENT)

        not_an_object = self.client.post("/api/sync", json={"kinds": ["product"], "filters": {"product": [1]}})
        self.assertEqual(not_an_object.status_code, 400)
        self.assertEqual(not_an_object.get_json()["error"], "filter_invalid")

        bad_limit = self.client.post("/api/sync", json={"kinds": ["product"], "filters": {"product": {"limit": 0}}})
        self.assertEqual(bad_limit.status_code, 400)

    def test_sync_price_list_rules_with_their_dependencies(self):
        res = self.client.post("/api/sync", json={"kinds": ["reglas", "listas-precios", "productos"]})

        self.assertEqual(res.status_code, 200)
        rules = res.get_json()["results"][PRICE_LIST_ITEM]
        self.assertEqual(rules["stats"], {"created": 3, "updated": 0, "errors": 0, "total": 3})
        self.assertEqual(self._count("price_list_items"), 3)

        rerun = self.client.post("/api/sync/priceListItem")
        self.assertEqual(rerun.get_json()["stats"]["updated"], 3)


class OrderPushRoutesTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="order_push_routes")
        TempConfig = self._temp_db.make_config(Config, TESTING=True)
        self.gateway = MockErpGateway()
        self.app = create_app(TempConfig, erp_gateway=self.gateway)
        self.client = self.app.test_client()
        reset_metrics_for_tests()
        reset_erp_circuit_breaker_for_tests()
        self.app.extensions["sync_orchestrator"].run_many([CLIENT, PRODUCT])

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_metrics_for_tests()
        reset_erp_circuit_breaker_for_tests()

    def _insert_order(self, client_external_id: int, lines: list) -> int:
        db = self._temp_db.connect()
        try:
            client_id = db.execute("SELECT id FROM clients WHERE external_id = ?", (client_external_id,)).fetchone()["id"]
            order_id = db.insert(
                "INSERT INTO orders (store_id, client_id, order_number) VALUES (?, ?, ?)",
                ("store", client_id, f"APP-{client_external_id}"),
            )
            for product_external_id, quantity, unit_price in lines:
                product_id = db.execute(
                    "SELECT id FROM products WHERE external_id = ?", (product_external_id,)
                ).fetchone()["id"]
                db.execute(
                    "INSERT INTO order_items (order_id, product_id, quantity, unit_price) VALUES (?, ?, ?, ?)",
                    (order_id, product_id, quantity, unit_price),
                )
            db.commit()
            return order_id
        finally:
            db.close()

    def _order(self, order_id: int) -> dict:
        db = self._temp_db.connect()
        try:
            return dict(db.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone())
        finally:
            db.close()

    def test_push_sends_pending_orders_and_reports_item_errors(self):
        pushed = self._insert_order(41, [(11, 10, 1.85), (12, 5, 1.2)])
        empty = self._insert_order(42, [])

        res = self.client.post("/api/sync/orders/push")

        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertTrue(body["success"])
        self.assertEqual(body["kind"], "orderPush")
        self.assertEqual(body["stats"], {"created": 1, "updated": 0, "errors": 1, "total": 2})
        self.assertEqual(body["errorDetails"], [{"external_id": None, "message": "Pedido sin lineas.", "local_id": empty}])
        order = self._order(pushed)
        self.assertEqual((order["external_id"], order["status"]), (503, "confirmed"))
        erp_order = self.gateway.list(ORDER, {"partner_id": 41})[-1]
        self.assertEqual(erp_order.attributes["amount_untaxed"], 24.5)
        self.assertEqual(erp_order.attributes["note"], "Pedido desde App: APP-41")

        inbound = self.client.post("/api/sync/order").get_json()
        self.assertEqual(inbound["stats"], {"created": 2, "updated": 1, "errors": 0, "total": 3})

    def test_push_limit_is_validated(self):
        for limit in (0, 101, "muchos"):
            with self.subTest(limit=limit):
                res = self.client.post("/api/sync/orders/push", json={"limit": limit})
                self.assertEqual(res.status_code, 400)

    def test_push_refused_while_orders_sync(self):
        with self.app.extensions["sync_run_guard"].hold([ORDER]):
            res = self.client.post("/api/sync/orders/push")

        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "sync_in_progress")

    def test_push_returns_502_when_erp_rejects_login(self):
        pushed = self._insert_order(41, [(11, 1, 1.85)])

        with mock.patch.object(
            self.gateway,
            "authenticate",
            side_effect=RemoteUnavailable("bad credentials", code="erp_auth_failed"),
        ):
            res = self.client.post("/api/sync/orders/push")

        self.assertEqual(res.status_code, 502)
        self.assertEqual(res.get_json()["error"], "erp_unavailable")
        self.assertEqual(res.get_json()["kind"], "orderPush")
        self.assertIsNone(self._order(pushed)["external_id"])


if __name__ == "__main__":
    unittest.main()
