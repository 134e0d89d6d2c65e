"""Per-backend circuit breaker.

A backend that keeps failing (5xx responses, timeouts, refused connections)
is short-circuited: adapter calls fail fast as transient errors until
``recovery_timeout`` seconds have passed. After that a few probe requests
decide whether the circuit closes again or re-opens.

Environment:
    RELAY_CIRCUIT_BREAKER_ENABLED (default: true)
    RELAY_CIRCUIT_BREAKER_FAILURE_THRESHOLD (default: 5)
    RELAY_CIRCUIT_BREAKER_RECOVERY_TIMEOUT (default: 30 seconds)
    RELAY_CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS (default: 3)

Each numeric setting can be overridden for one backend by inserting the
backend name, e.g. ``RELAY_JENKINS_CIRCUIT_BREAKER_FAILURE_THRESHOLD``.
"""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from enum import Enum

from relay.logging import get_logger

logger = get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerConfigError(ValueError):
    """Raised when circuit breaker settings are out of range."""


def _env_setting(backend: str, name: str) -> str | None:
    """Read a breaker setting, preferring the backend-specific variable."""
    if backend:
        value = os.getenv(f"RELAY_{backend.upper()}_CIRCUIT_BREAKER_{name}")
        if value:
            return value
    return os.getenv(f"RELAY_CIRCUIT_BREAKER_{name}") or None


def _env_float(backend: str, name: str, default: float) -> float:
    raw = _env_setting(backend, name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid CIRCUIT_BREAKER_%s %r, using default %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("CIRCUIT_BREAKER_%s must be positive, using default %s", name, default)
        return default
    return value


def _env_int(backend: str, name: str, default: int) -> int:
    value = _env_float(backend, name, default)
    if not float(value).is_integer():
        logger.warning("CIRCUIT_BREAKER_%s must be a whole number, using default %s", name, default)
        return default
    return int(value)


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds for one backend's circuit breaker.

    Attributes:
        failure_threshold: Consecutive failures that open the circuit.
        recovery_timeout: Seconds an open circuit waits before probing.
        half_open_max_calls: Probe requests allowed while half-open; this
            many successes close the circuit.
        enabled: When false the breaker lets everything through.
    """

    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    half_open_max_calls: int = 3
    enabled: bool = True

    def __post_init__(self) -> None:
        for name in ("failure_threshold", "half_open_max_calls"):
            value = getattr(self, name)
            # bool is an int subclass
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise CircuitBreakerConfigError(f"{name} must be a positive integer, got {value!r}")
        if self.recovery_timeout <= 0:
            raise CircuitBreakerConfigError(
                f"recovery_timeout must be positive, got {self.recovery_timeout!r}"
            )

    @classmethod
    def from_env(cls, backend: str = "") -> CircuitBreakerConfig:
        """Build a config from ``RELAY_*CIRCUIT_BREAKER_*`` variables.

        Unparseable or non-positive values log a warning and keep the default.
        """
        defaults = cls()
        enabled = os.getenv("RELAY_CIRCUIT_BREAKER_ENABLED", "true").strip().lower()
        return cls(
            failure_threshold=_env_int(backend, "FAILURE_THRESHOLD", defaults.failure_threshold),
            recovery_timeout=_env_float(backend, "RECOVERY_TIMEOUT", defaults.recovery_timeout),
            half_open_max_calls=_env_int(
                backend, "HALF_OPEN_MAX_CALLS", defaults.half_open_max_calls
            ),
            enabled=enabled in ("true", "1", "yes"),
        )


class CircuitBreaker:
    """Thread-safe breaker shared by every orchestration using one adapter.

    The adapter asks ``allow_request()`` before each HTTP call and reports
    the outcome with ``record_success()`` or ``record_failure()``. Only
    failures that say something about backend health should be recorded;
    a 404 or 422 is a success from the breaker's point of view.
    """

    def __init__(self, service_name: str, config: CircuitBreakerConfig | None = None) -> None:
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._probes_sent = 0
        self._probes_passed = 0
        self._rejected = 0
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def failure_count(self) -> int:
        """Consecutive failures recorded while closed."""
        with self._lock:
            return self._consecutive_failures

    @property
    def rejected_calls(self) -> int:
        with self._lock:
            return self._rejected

    def _maybe_half_open(self) -> None:
        if (
            self._state == CircuitState.OPEN
            and time.monotonic() - self._opened_at >= self.config.recovery_timeout
        ):
            self._move_to(CircuitState.HALF_OPEN)

    def _move_to(self, state: CircuitState) -> None:
        previous = self._state
        self._state = state
        if state == CircuitState.OPEN:
            self._opened_at = time.monotonic()
        elif state == CircuitState.HALF_OPEN:
            self._probes_sent = 0
            self._probes_passed = 0
        else:
            self._consecutive_failures = 0
        logger.info(
            "[CIRCUIT_BREAKER] %s: %s -> %s", self.service_name, previous.value, state.value
        )

    def allow_request(self) -> bool:
        """Return True if a call to the backend may go out now."""
        if not self.config.enabled:
            return True

        with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.CLOSED:
                return True
            if (
                self._state == CircuitState.HALF_OPEN
                and self._probes_sent < self.config.half_open_max_calls
            ):
                self._probes_sent += 1
                logger.debug(
                    "[CIRCUIT_BREAKER] %s: probe %s/%s",
                    self.service_name,
                    self._probes_sent,
                    self.config.half_open_max_calls,
                )
                return True
            self._rejected += 1
            logger.warning(
                "[CIRCUIT_BREAKER] %s: request rejected, circuit is %s",
                self.service_name,
                self._state.value,
            )
            return False

    def record_success(self) -> None:
        if not self.config.enabled:
            return
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._probes_passed += 1
                if self._probes_passed >= self.config.half_open_max_calls:
                    self._move_to(CircuitState.CLOSED)
            else:
                self._consecutive_failures = 0

    def record_failure(self, error: BaseException | None = None) -> None:
        """Count a failed call; opens the circuit at the threshold.

        A failed probe while half-open re-opens the circuit immediately.
        """
        if not self.config.enabled:
            return
        with self._lock:
            logger.warning(
                "[CIRCUIT_BREAKER] %s: failure recorded%s",
                self.service_name,
                f" ({type(error).__name__}: {error})" if error else "",
            )
            if self._state == CircuitState.HALF_OPEN:
                self._move_to(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED:
                self._consecutive_failures += 1
                if self._consecutive_failures >= self.config.failure_threshold:
                    self._move_to(CircuitState.OPEN)
