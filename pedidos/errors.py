from __future__ import annotations

from typing import Any, Dict

from pedidos.contexts.erp.domain.gateway import RemoteRejected
from pedidos.ui_strings import error_message


class AppError(Exception):
    """Failure with a stable public code, rendered as JSON by the app errorhandler.

    Subclasses set the class-level defaults; any keyword passed to the
    constructor overrides them for that instance only.
    """

    code = "system_error"
    message_key = "unexpected_error"
    http_status = 500
    critical = True

    def __init__(
        self,
        code: str | None = None,
        message_key: str | None = None,
        http_status: int | None = None,
        critical: bool | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        overrides = {"code": code, "message_key": message_key, "http_status": http_status, "critical": critical}
        for name, value in overrides.items():
            if value is not None:
                setattr(self, name, value)
        self.http_status = int(self.http_status)
        self.details = str(details).strip() if details else None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.code)

    def user_message(self) -> str:
        return error_message(self.message_key, error_message("unexpected_error"))

    def to_response_payload(self, request_id: str) -> Dict[str, Any]:
        body = {"error": self.code, "message": self.user_message(), "request_id": request_id}
        body.update(self.payload)
        return body


class UserActionError(AppError):
    code = "action_invalid"
    message_key = "action_invalid"
    http_status = 400
    critical = False


class ValidationError(UserActionError):
    code = "validation_error"


class NotFoundError(UserActionError):
    code = "not_found"
    http_status = 404


class PermissionError(UserActionError):
    code = "permission_denied"
    message_key = "permission_denied"
    http_status = 403


class IntegrationError(AppError):
    code = "integration_error"
    message_key = "erp_unavailable"
    http_status = 502
    critical = False


class NotReadyError(AppError):
    code = "not_ready"
    message_key = "not_ready"
    http_status = 503
    critical = False


class SystemError(AppError):
    pass


def classify_erp_failure(error: Exception) -> tuple[str, str, int]:
    """Map an ERP gateway failure to (code, message_key, http_status)."""
    if isinstance(error, RemoteRejected):
        return ("erp_rejected", "erp_rejected", 422)
    return ("erp_unavailable", "erp_unavailable", 502)
