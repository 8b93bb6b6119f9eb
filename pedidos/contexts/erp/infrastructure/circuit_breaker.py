from __future__ import annotations

import time
from collections import deque
from threading import Lock
from typing import Callable, Mapping


CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


def _clamp(value, default, minimum, maximum, cast):
    try:
        parsed = cast(value)
    except (TypeError, ValueError):
        parsed = default
    return max(minimum, min(maximum, parsed))


class ErpCircuitBreaker:
    """Failure-rate breaker over a sliding time window.

    Only transport-level failures are recorded as failures. Once the rate in
    the window reaches the threshold (with enough samples) the circuit opens
    and callers fail fast; after `open_seconds` a limited number of trial
    calls are let through and the first result decides whether it closes.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._lock = Lock()
        self._clock = clock
        self._enabled = True
        self._error_rate_threshold = 0.6
        self._min_samples = 5
        self._window_seconds = 120
        self._open_seconds = 30
        self._half_open_max_calls = 1

        self._state = CLOSED
        self._opened_at = 0.0
        self._trial_calls = 0
        self._events: deque[tuple[float, bool]] = deque()

    def configure(
        self,
        *,
        enabled: bool = True,
        error_rate_threshold: float = 0.6,
        min_samples: int = 5,
        window_seconds: int = 120,
        open_seconds: int = 30,
        half_open_max_calls: int = 1,
    ) -> None:
        with self._lock:
            self._enabled = bool(enabled)
            self._error_rate_threshold = _clamp(error_rate_threshold, 0.6, 0.05, 1.0, float)
            self._min_samples = _clamp(min_samples, 5, 1, 1000, int)
            self._window_seconds = _clamp(window_seconds, 120, 1, 3600, int)
            self._open_seconds = _clamp(open_seconds, 30, 0, 3600, int)
            self._half_open_max_calls = _clamp(half_open_max_calls, 1, 1, 100, int)
            if not self._enabled:
                self._reset()

    def configure_from(self, config: Mapping) -> None:
        self.configure(
            enabled=bool(config.get("ERP_CIRCUIT_ENABLED", True)),
            error_rate_threshold=config.get("ERP_CIRCUIT_ERROR_RATE", 0.6),
            min_samples=config.get("ERP_CIRCUIT_MIN_SAMPLES", 5),
            window_seconds=config.get("ERP_CIRCUIT_WINDOW_SECONDS", 120),
            open_seconds=config.get("ERP_CIRCUIT_OPEN_SECONDS", 30),
        )

    def _reset(self) -> None:
        self._state = CLOSED
        self._opened_at = 0.0
        self._trial_calls = 0
        self._events.clear()

    def _trip(self, now: float) -> None:
        self._state = OPEN
        self._opened_at = now
        self._trial_calls = 0

    def _window(self, now: float) -> tuple[int, int]:
        cutoff = now - self._window_seconds
        while self._events and self._events[0][0] < cutoff:
            self._events.popleft()
        failures = sum(1 for _ts, ok in self._events if not ok)
        return len(self._events), failures

    def before_call(self) -> tuple[bool, str]:
        now = self._clock()
        with self._lock:
            if not self._enabled:
                return True, "disabled"
            if self._state == OPEN:
                if now - self._opened_at < self._open_seconds:
                    return False, OPEN
                self._state = HALF_OPEN
                self._trial_calls = 0
            if self._state == HALF_OPEN:
                if self._trial_calls >= self._half_open_max_calls:
                    return False, HALF_OPEN
                self._trial_calls += 1
            return True, self._state

    def record_success(self) -> None:
        now = self._clock()
        with self._lock:
            if not self._enabled:
                return
            if self._state == HALF_OPEN:
                self._reset()
                return
            self._events.append((now, True))
            self._window(now)

    def record_failure(self) -> None:
        now = self._clock()
        with self._lock:
            if not self._enabled or self._state == OPEN:
                return
            self._events.append((now, False))
            if self._state == HALF_OPEN:
                self._trip(now)
                return
            samples, failures = self._window(now)
            if samples >= self._min_samples and failures / samples >= self._error_rate_threshold:
                self._trip(now)

    def snapshot(self) -> dict:
        now = self._clock()
        with self._lock:
            samples, failures = self._window(now)
            return {
                "state": self._state,
                "enabled": self._enabled,
                "samples": samples,
                "failures": failures,
                "failure_rate": round(failures / samples, 4) if samples else 0.0,
                "opened_seconds_ago": round(max(0.0, now - self._opened_at), 2) if self._state == OPEN else 0.0,
            }

    def reset_for_tests(self) -> None:
        with self._lock:
            self._enabled = True
            self._reset()


_ERP_CIRCUIT_BREAKER = ErpCircuitBreaker()


def get_erp_circuit_breaker() -> ErpCircuitBreaker:
    return _ERP_CIRCUIT_BREAKER


def erp_circuit_snapshot() -> dict:
    return _ERP_CIRCUIT_BREAKER.snapshot()


def reset_erp_circuit_breaker_for_tests() -> None:
    _ERP_CIRCUIT_BREAKER.reset_for_tests()
