from __future__ import annotations

import http.client
import itertools
import json
import ssl
import urllib.error
import urllib.request


class ErpError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        fault_name: str | None = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.fault_name = str(fault_name or "").strip() or None
        self.http_status = http_status


class OdooJsonRpcClient:
    """Minimal Odoo JSON-RPC transport (`/jsonrpc`, services `common` and `object`)."""

    def __init__(self, base_url: str, *, timeout: int = 20, verify_ssl: bool = True) -> None:
        if not base_url:
            raise ErpError("ODOO_URL no configurado.")
        self.endpoint = f"{base_url.rstrip('/')}/jsonrpc"
        self.timeout = timeout
        self._context = None if verify_ssl else ssl._create_unverified_context()
        self._ids = itertools.count(1)

    def call(self, service: str, method: str, *args: object) -> object:
        payload = {
            "jsonrpc": "2.0",
            "method": "call",
            "params": {"service": service, "method": method, "args": list(args)},
            "id": next(self._ids),
        }
        response = self._request_json(payload)
        if not isinstance(response, dict):
            raise ErpError("Respuesta inesperada del ERP (JSON no-objeto).")

        error = response.get("error")
        if error:
            data = (error.get("data") or {}) if isinstance(error, dict) else {}
            message = data.get("message") or (error.get("message") if isinstance(error, dict) else str(error))
            raise ErpError(str(message or "Error del ERP"), fault_name=data.get("name"))
        return response.get("result")

    def _request_json(self, payload: dict) -> object:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        data = json.dumps(payload, separators=(",", ":"), ensure_ascii=True).encode("utf-8")
        request = urllib.request.Request(self.endpoint, data=data, headers=headers, method="POST")

        try:
            with urllib.request.urlopen(request, timeout=self.timeout, context=self._context) as response:
                body = response.read().decode("utf-8")
                if not body:
                    return {}
                return json.loads(body)
        except urllib.error.HTTPError as exc:
            error_body = exc.read().decode("utf-8") if exc.fp else ""
            raise ErpError(f"ERP HTTP {exc.code}: {error_body[:200]}", http_status=exc.code) from exc
        except urllib.error.URLError as exc:
            raise ErpError(f"Error de conexion ERP: {exc.reason}") from exc
        except TimeoutError as exc:
            raise ErpError(f"Tiempo de espera agotado con el ERP ({self.timeout}s).") from exc
        except ValueError as exc:
            raise ErpError("ERP devolvio JSON invalido.") from exc
        except (http.client.HTTPException, OSError) as exc:
            raise ErpError(f"Conexion con el ERP interrumpida: {exc!r}") from exc
