"""
Thread-safe circuit breaker for the embedding and completion collaborators.

A tripped breaker makes the caller skip the network round trip and go
straight to its degraded path (deterministic embedding, heuristic
classification, hardcoded structure skeleton).

Usage:
    breaker = CircuitBreaker(name="embeddings", failure_threshold=5)

    if not breaker.allow_request():
        return fallback()
    try:
        result = call_service()
    except httpx.HTTPError:
        breaker.record_failure()
        return fallback()
    breaker.record_success()
    return result

Defaults come from RAGCORE_BREAKER_FAILURES and RAGCORE_BREAKER_RECOVERY_SECONDS.
"""

from __future__ import annotations

import os
import threading
import time
from enum import Enum
from typing import Any, Callable, Optional

from ragcore.shared.observability import get_logger
from ragcore.shared.observability.metrics import circuit_breaker_transitions_total

logger = get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def _positive_from_env(env_var: str, default: Any, cast: Callable[[str], Any]) -> Any:
    raw = os.getenv(env_var)
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        value = None
    if value is None or value <= 0:
        logger.warning("circuit_breaker_env_ignored", env_var=env_var, value=raw, default=default)
        return default
    return value


DEFAULT_FAILURE_THRESHOLD = _positive_from_env("RAGCORE_BREAKER_FAILURES", 5, int)
DEFAULT_RECOVERY_TIMEOUT = _positive_from_env("RAGCORE_BREAKER_RECOVERY_SECONDS", 30.0, float)


class CircuitBreaker:
    """
    Closed -> open after `failure_threshold` consecutive failures. Open ->
    half-open once `recovery_timeout` seconds have passed. In half-open a
    success closes the circuit and a failure reopens it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        recovery_timeout: float = DEFAULT_RECOVERY_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failures

    # Callers hold self._lock
    def _transition(self, state: CircuitState, **fields: Any) -> None:
        previous, self._state = self._state, state
        if state == CircuitState.OPEN:
            self._opened_at = self._clock()
        circuit_breaker_transitions_total.labels(name=self.name, state=state.value).inc()
        log = logger.warning if state == CircuitState.OPEN else logger.info
        log(
            "circuit_breaker_transition",
            name=self.name,
            from_state=previous.value,
            to_state=state.value,
            **fields,
        )

    def allow_request(self) -> bool:
        with self._lock:
            if self._state != CircuitState.OPEN:
                return True
            waited = self._clock() - (self._opened_at or 0.0)
            if waited < self.recovery_timeout:
                return False
            self._transition(CircuitState.HALF_OPEN, waited_seconds=round(waited, 3))
            return True

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            if self._state != CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN, failures=self._failures)
            elif self._state == CircuitState.CLOSED and self._failures >= self.failure_threshold:
                self._transition(CircuitState.OPEN, failures=self._failures)

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker(name={self.name!r}, state={self.state.value}, "
            f"failures={self.failure_count}/{self.failure_threshold})"
        )
