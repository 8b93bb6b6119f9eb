from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict, Iterator, Tuple

from flask import g, has_request_context, request


_HTTP_DURATION_BUCKETS_MS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0)
_SYNC_DURATION_BUCKETS_MS = (50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 15000.0, 60000.0)

_REQUEST_ID: contextvars.ContextVar[str] = contextvars.ContextVar("pedidos_request_id", default="")

# Attributes every LogRecord carries; anything else came in through `extra=`.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


def set_log_request_id(request_id: str | None) -> None:
    _REQUEST_ID.set(str(request_id or "").strip())


@contextlib.contextmanager
def bind_request_id(request_id: str | None) -> Iterator[str]:
    """Attach a request id to logs emitted by this thread (scheduler, workers)."""
    token = _REQUEST_ID.set(str(request_id or "").strip())
    try:
        yield _REQUEST_ID.get() or "n/a"
    finally:
        _REQUEST_ID.reset(token)


def current_request_id(default: str = "n/a") -> str:
    if has_request_context():
        request_id = str(getattr(g, "request_id", "") or "").strip()
        if request_id:
            return request_id
    return _REQUEST_ID.get() or default


def ensure_request_id() -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if not request_id:
        request_id = str(request.headers.get("X-Request-Id") or "").strip() or str(uuid.uuid4())
        g.request_id = request_id
    set_log_request_id(request_id)
    return request_id


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line; `extra=` fields are copied as top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(self._context_fields(record))
        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key.startswith("_") or key in payload or callable(value):
                continue
            payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)

    @staticmethod
    def _context_fields(record: logging.LogRecord) -> Dict[str, object]:
        if has_request_context():
            return {
                "request_id": current_request_id(),
                "path": request.path,
                "method": request.method,
            }
        explicit = str(getattr(record, "request_id", "") or "").strip()
        return {"request_id": explicit or current_request_id(), "thread": record.threadName}


def configure_json_logging(app) -> None:
    if not app.config.get("LOG_JSON", True):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).strip().upper(), logging.INFO))
    app.logger.handlers = []
    app.logger.propagate = True


Labels = Tuple[Tuple[str, str], ...]


def _labels(**values: object) -> Labels:
    return tuple(sorted((key, str(value)) for key, value in values.items()))


class _Counter:
    kind = "counter"

    def __init__(self, name: str, help_text: str) -> None:
        self.name = name
        self.help_text = help_text
        self.values: Dict[Labels, float] = {}

    def inc(self, labels: Labels, amount: float = 1) -> None:
        self.values[labels] = self.values.get(labels, 0) + amount

    def samples(self):
        for labels, value in sorted(self.values.items()):
            yield self.name, labels, value


class _Histogram:
    kind = "histogram"

    def __init__(self, name: str, help_text: str, buckets: Tuple[float, ...]) -> None:
        self.name = name
        self.help_text = help_text
        self.buckets = buckets
        self.values: Dict[Labels, dict] = {}

    def observe(self, labels: Labels, value: float) -> None:
        state = self.values.setdefault(labels, {"count": 0, "sum": 0.0, "le": [0] * len(self.buckets)})
        amount = max(0.0, float(value))
        state["count"] += 1
        state["sum"] += amount
        for index, limit in enumerate(self.buckets):
            if amount <= limit:
                state["le"][index] += 1

    def samples(self):
        for labels, state in sorted(self.values.items()):
            for limit, count in zip(self.buckets, state["le"]):
                yield f"{self.name}_bucket", labels + (("le", f"{limit:g}"),), count
            yield f"{self.name}_bucket", labels + (("le", "+Inf"),), state["count"]
            yield f"{self.name}_sum", labels, round(state["sum"], 3)
            yield f"{self.name}_count", labels, state["count"]


class MetricsRegistry:
    """Process-local metric families, rendered on demand as Prometheus text."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.http_requests = _Counter("http_request_total", "HTTP requests by method, route and status.")
        self.http_duration = _Histogram(
            "http_request_duration_ms",
            "HTTP request duration in milliseconds.",
            _HTTP_DURATION_BUCKETS_MS,
        )
        self.sync_runs = _Counter("erp_sync_runs_total", "Sync runs by entity kind and outcome.")
        self.sync_items = _Counter("erp_sync_items_total", "Reconciled items by entity kind and result.")
        self.sync_duration = _Histogram(
            "erp_sync_run_duration_ms",
            "Duration of finished sync runs in milliseconds.",
            _SYNC_DURATION_BUCKETS_MS,
        )
        self.pricelist_mutations = _Counter(
            "pricelist_mutations_total",
            "Price list assignments by final state.",
        )

    def families(self):
        return (
            self.http_requests,
            self.http_duration,
            self.sync_runs,
            self.sync_items,
            self.sync_duration,
            self.pricelist_mutations,
        )

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        method = (method or "GET").upper()
        with self._lock:
            self.http_requests.inc(_labels(method=method, route=route or "unknown", status=int(status_code)))
            self.http_duration.observe(_labels(method=method, route=route or "unknown"), duration_ms)

    def observe_sync_run(
        self,
        kind: str,
        outcome: str,
        stats: Dict[str, int] | None = None,
        duration_ms: float | None = None,
    ) -> None:
        with self._lock:
            self.sync_runs.inc(_labels(kind=kind, outcome=outcome))
            for result in ("created", "updated", "errors"):
                count = int((stats or {}).get(result) or 0)
                if count:
                    self.sync_items.inc(_labels(kind=kind, result=result), count)
            if duration_ms is not None:
                self.sync_duration.observe(_labels(kind=kind), duration_ms)

    def observe_pricelist_mutation(self, state: str) -> None:
        with self._lock:
            self.pricelist_mutations.inc(_labels(state=state))

    def snapshot(self) -> dict:
        """Compact view for /health."""
        with self._lock:
            http_total = sum(self.http_requests.values.values())
            http_errors = sum(
                value for labels, value in self.http_requests.values.items() if int(dict(labels)["status"]) >= 400
            )
            return {
                "requests_total": int(http_total),
                "errors_total": int(http_errors),
                "sync_runs": {
                    f"{dict(labels)['kind']}:{dict(labels)['outcome']}": int(value)
                    for labels, value in sorted(self.sync_runs.values.items())
                },
                "sync_items": {
                    f"{dict(labels)['kind']}:{dict(labels)['result']}": int(value)
                    for labels, value in sorted(self.sync_items.values.items())
                },
                "pricelist_mutations": {
                    dict(labels)["state"]: int(value)
                    for labels, value in sorted(self.pricelist_mutations.values.items())
                },
            }

    def render(self) -> list[str]:
        lines: list[str] = []
        with self._lock:
            for family in self.families():
                lines.append(f"# HELP {family.name} {family.help_text}")
                lines.append(f"# TYPE {family.name} {family.kind}")
                for name, labels, value in family.samples():
                    lines.append(_prom_line(name, value, labels))
        return lines

    def reset(self) -> None:
        with self._lock:
            for family in self.families():
                family.values.clear()


def _prom_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prom_line(name: str, value: float, labels: Labels = ()) -> str:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not labels:
        return f"{name} {value}"
    rendered = ",".join(f'{key}="{_prom_escape(val)}"' for key, val in labels)
    return f"{name}{{{rendered}}} {value}"


_METRICS = MetricsRegistry()


def mark_request_start() -> None:
    g._request_started_at = time.perf_counter()


def observe_response(response):
    started = getattr(g, "_request_started_at", None)
    elapsed_ms = (time.perf_counter() - started) * 1000.0 if started else 0.0
    route = request.url_rule.rule if request.url_rule is not None else request.path
    _METRICS.observe_http(request.method, route, response.status_code, elapsed_ms)
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"
    response.headers.setdefault("X-Request-Id", current_request_id())
    return response


def observe_sync_run(
    kind: str,
    outcome: str,
    stats: Dict[str, int] | None = None,
    duration_ms: float | None = None,
) -> None:
    _METRICS.observe_sync_run(kind, outcome, stats, duration_ms)


def observe_pricelist_mutation(state: str) -> None:
    _METRICS.observe_pricelist_mutation(state)


def metrics_snapshot() -> dict:
    return _METRICS.snapshot()


def prometheus_metrics_text(*, circuit_state: str | None = None) -> str:
    lines = _METRICS.render()
    if circuit_state is not None:
        lines.append("# HELP erp_circuit_state ERP circuit breaker state (1 active, 0 inactive).")
        lines.append("# TYPE erp_circuit_state gauge")
        for state in ("closed", "open", "half_open"):
            lines.append(_prom_line("erp_circuit_state", 1 if circuit_state == state else 0, _labels(state=state)))
    return "\n".join(lines) + "\n"


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
    set_log_request_id(None)
