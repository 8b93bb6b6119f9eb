import os
from functools import partial

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from pedidos.config import Config
from pedidos.db import close_db, connect_database, init_db
from pedidos.db_migrations import register_db_cli
from pedidos.observability import (
    configure_json_logging,
    ensure_request_id,
    mark_request_start,
    metrics_snapshot,
    observe_response,
    prometheus_metrics_text,
)


def create_app(config_class=Config, *, erp_gateway=None):
    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_json_logging(app)

    _ensure_database_dir(app)
    _register_error_handlers(app)
    _register_services(app, erp_gateway)
    _register_blueprints(app)
    _register_health(app)
    register_db_cli(app)
    _maybe_init_schema(app)
    app.extensions["query_cache"].mark_ready()

    _register_scheduler(app)
    app.teardown_appcontext(close_db)
    return app


def _ensure_database_dir(app: Flask) -> None:
    database_dir = app.config.get("DATABASE_DIR")
    if database_dir:
        os.makedirs(database_dir, exist_ok=True)


def _maybe_init_schema(app: Flask) -> None:
    auto_init = bool(app.config.get("DB_AUTO_INIT", False))
    if app.testing:
        auto_init = True
    if not auto_init:
        return

    flask_env = (os.environ.get("FLASK_ENV", "development") or "development").strip().lower()
    if not app.testing and flask_env != "development":
        app.logger.warning("DB_AUTO_INIT ignorado fuera de development.")
        return

    with app.app_context():
        init_db()


def _register_services(app: Flask, erp_gateway) -> None:
    from pedidos.contexts.erp.interfaces.runtime import init_erp_gateway
    from pedidos.contexts.pricing.application.optimistic import OptimisticMutationCoordinator
    from pedidos.contexts.pricing.application.query_cache import QueryCache
    from pedidos.contexts.pricing.application.service import PricelistAssignmentService
    from pedidos.contexts.sync.application.orchestrator import SyncOrchestrator
    from pedidos.contexts.sync.application.run_guard import SyncRunGuard

    gateway = init_erp_gateway(app, erp_gateway)
    connect = partial(connect_database, app.config["DB_PATH"])
    store_id = app.config.get("DEFAULT_STORE_ID")

    cache = QueryCache()
    coordinator = OptimisticMutationCoordinator(
        cache,
        max_workers=int(app.config.get("PRICELIST_MUTATION_WORKERS", 4) or 4),
    )
    app.extensions["query_cache"] = cache
    app.extensions["sync_run_guard"] = SyncRunGuard()
    app.extensions["sync_orchestrator"] = SyncOrchestrator(
        gateway,
        connect,
        store_id=store_id,
        max_workers=int(app.config.get("SYNC_MAX_WORKERS", 3) or 3),
        after_run=_invalidate_reads(cache),
    )
    app.extensions["pricelist_service"] = PricelistAssignmentService(
        gateway,
        cache,
        coordinator,
        connect,
        store_id=store_id,
    )


def _invalidate_reads(cache):
    def _after_run(summary) -> None:
        # Mirror rows changed under the cached reads.
        if summary.created or summary.updated:
            cache.invalidate_all()

    return _after_run


def _register_blueprints(app: Flask) -> None:
    from pedidos.contexts.pricing.interfaces.http import pricing_bp
    from pedidos.contexts.sync.interfaces.http import sync_bp

    app.register_blueprint(sync_bp)
    app.register_blueprint(pricing_bp)


def _register_scheduler(app: Flask) -> None:
    from pedidos.scheduler import start_sync_scheduler

    start_sync_scheduler(app)


def _register_error_handlers(app: Flask) -> None:
    from pedidos.contexts.erp.domain.gateway import ErpGatewayError
    from pedidos.contexts.sync.domain.errors import LocalStoreError
    from pedidos.errors import AppError, IntegrationError, SystemError, classify_erp_failure

    @app.before_request
    def _start_request() -> None:
        ensure_request_id()
        mark_request_start()

    @app.after_request
    def _finish_request(response):
        response.headers["X-Request-Id"] = ensure_request_id()
        return observe_response(response)

    def _render(error: AppError):
        request_id = ensure_request_id()
        context = {
            "request_id": request_id,
            "error_code": error.code,
            "http_status": error.http_status,
            "details": error.details,
            "request_path": request.path,
            "http_method": request.method,
        }
        if error.critical:
            app.logger.error("application_error", extra=context, exc_info=True)
        else:
            app.logger.warning("application_error", extra=context)
        return jsonify(error.to_response_payload(request_id)), error.http_status

    @app.errorhandler(AppError)
    def _handle_app_error(exc: AppError):
        return _render(exc)

    @app.errorhandler(ErpGatewayError)
    def _handle_erp_error(exc: ErpGatewayError):
        code, message_key, http_status = classify_erp_failure(exc)
        return _render(
            IntegrationError(
                code=code,
                message_key=message_key,
                http_status=http_status,
                details=str(exc),
                payload={"success": False},
            )
        )

    @app.errorhandler(LocalStoreError)
    def _handle_local_store_error(exc: LocalStoreError):
        return _render(
            SystemError(
                code="local_store_failed",
                message_key="local_store_failed",
                critical=False,
                details=str(exc),
                payload={"success": False},
            )
        )

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc
        return _render(SystemError(code="unexpected_error", details=str(exc)))


def _register_health(app: Flask) -> None:
    from pedidos.contexts.erp.infrastructure.circuit_breaker import erp_circuit_snapshot

    @app.route("/health")
    def health():
        db_path = app.config.get("DB_PATH") or "unknown"
        backend = "postgres" if str(db_path).startswith("postgres") else "sqlite"
        cache = app.extensions["query_cache"]
        scheduler = app.extensions.get("sync_scheduler")
        payload = {
            "status": "ok" if cache.is_ready else "starting",
            "db": backend,
            "erp_mode": app.config.get("ERP_MODE", "mock"),
            "cache": {"ready": cache.is_ready},
            "erp_circuit": erp_circuit_snapshot(),
            "scheduler": {"running": bool(scheduler and scheduler.is_running)},
            "metrics": metrics_snapshot(),
        }
        return payload, 200

    @app.route("/metrics")
    def metrics():
        circuit_state = str(erp_circuit_snapshot().get("state") or "closed")
        body = prometheus_metrics_text(circuit_state=circuit_state)
        return Response(body, mimetype="text/plain; version=0.0.4")
