import unittest
from unittest.mock import patch

from pedidos import create_app
from pedidos.config import Config
from pedidos.contexts.erp.domain.gateway import RemoteRejected, RemoteUnavailable
from pedidos.contexts.erp.infrastructure.mock import MockErpGateway
from pedidos.contexts.sync.domain.errors import LocalStoreError
from pedidos.db import close_db
from pedidos.errors import classify_erp_failure
from pedidos.ui_strings import error_message
from tests.helpers.temp_db import TempDbSandbox


class ErrorHandlingApiTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="error_api")
        TempConfig = self._temp_db.make_config(Config, TESTING=True, PROPAGATE_EXCEPTIONS=False)
        self.gateway = MockErpGateway()
        self.app = create_app(TempConfig, erp_gateway=self.gateway)
        self.client = self.app.test_client()
        self.service = self.app.extensions["pricelist_service"]

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def test_validation_error_payload(self) -> None:
        response = self.client.post("/api/price-lists", json={})

        self.assertEqual(response.status_code, 400)
        payload = response.get_json()
        self.assertEqual(payload.get("error"), "name_required")
        self.assertEqual(payload.get("message"), error_message("name_required"))
        self.assertEqual(payload.get("field"), "name")
        self.assertTrue((payload.get("request_id") or "").strip())

    def test_erp_unavailable_maps_to_502(self) -> None:
        with patch.object(self.gateway, "create", side_effect=RemoteUnavailable("down", code="erp_transport_error")):
            response = self.client.post("/api/price-lists", json={"name": "Tarifa Verano"})

        self.assertEqual(response.status_code, 502)
        payload = response.get_json()
        self.assertEqual(payload.get("error"), "erp_unavailable")
        self.assertFalse(payload.get("success"))

    def test_erp_rejection_maps_to_422(self) -> None:
        with patch.object(self.gateway, "create", side_effect=RemoteRejected("dup", code="odoo_ValidationError")):
            response = self.client.post("/api/price-lists", json={"name": "Tarifa Verano"})

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.get_json().get("error"), "erp_rejected")

    def test_local_store_error_maps_to_500_without_traceback(self) -> None:
        with patch.object(self.service.repository, "get_client", side_effect=LocalStoreError("database is locked")):
            response = self.client.get("/api/clients/1")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json().get("error"), "local_store_failed")
        self.assertNotIn("database is locked", response.get_data(as_text=True))

    def test_unexpected_error_is_generic(self) -> None:
        with patch.object(self.service, "create_price_list", side_effect=RuntimeError("boom secreto")):
            response = self.client.post("/api/price-lists", json={"name": "Tarifa Verano"})

        self.assertEqual(response.status_code, 500)
        payload = response.get_json()
        self.assertEqual(payload.get("error"), "unexpected_error")
        self.assertEqual(payload.get("message"), error_message("unexpected_error"))
        body = response.get_data(as_text=True)
        self.assertNotIn("Traceback", body)
        self.assertNotIn("boom secreto", body)

    def test_request_id_is_echoed(self) -> None:
        response = self.client.get("/api/clients/999", headers={"X-Request-Id": "req-pedidos-1"})

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.headers.get("X-Request-Id"), "req-pedidos-1")
        self.assertEqual(response.get_json().get("request_id"), "req-pedidos-1")

    def test_unknown_route_stays_http_404(self) -> None:
        response = self.client.get("/api/nada")

        self.assertEqual(response.status_code, 404)


class ClassifyErpFailureTest(unittest.TestCase):
    def test_classification(self) -> None:
        self.assertEqual(classify_erp_failure(RemoteRejected("x")), ("erp_rejected", "erp_rejected", 422))
        self.assertEqual(classify_erp_failure(RemoteUnavailable("x")), ("erp_unavailable", "erp_unavailable", 502))


if __name__ == "__main__":
    unittest.main()
