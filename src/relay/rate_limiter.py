"""Outgoing request budget for backend API calls.

Several deployments can trigger and poll workflows on the same backend at
once, all through one adapter. The adapter takes a permit from its
``RequestRateLimiter`` before every HTTP request so the combined traffic
stays under the backend's published API limits.

Usage:
    limiter = RequestRateLimiter.from_config(config, service_name="github")
    if not limiter.acquire():
        raise TransientFetchError("request budget exhausted")
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from relay.clock import current_wait_budget
from relay.logging import get_logger
from relay.types import RateLimitStrategy

if TYPE_CHECKING:
    from relay.config import Config

logger = get_logger(__name__)


class RateLimitExceededError(Exception):
    """No permit was available and the strategy is REJECT."""


@dataclass
class _Window:
    """One refilling allowance, e.g. 60 requests per 60 seconds."""

    capacity: float
    period: float
    tokens: float = field(init=False)

    def __post_init__(self) -> None:
        self.tokens = self.capacity

    @property
    def rate(self) -> float:
        return self.capacity / self.period

    @property
    def fraction_left(self) -> float:
        return self.tokens / self.capacity

    def refill(self, elapsed: float) -> None:
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)

    def seconds_until_token(self) -> float:
        return max(0.0, (1.0 - self.tokens) / self.rate)


class TokenBucket:
    """Thread-safe per-minute and per-hour allowances.

    A request takes one token from each window, so it only goes out when
    both windows have one.
    """

    def __init__(self, requests_per_minute: int, requests_per_hour: int) -> None:
        self._minute = _Window(float(requests_per_minute), 60.0)
        self._hour = _Window(float(requests_per_hour), 3600.0)
        self._last_refill = time.monotonic()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        # Caller holds the lock
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._last_refill = now
        self._minute.refill(elapsed)
        self._hour.refill(elapsed)

    def try_acquire(self) -> float:
        """Take a token if one is available.

        Returns:
            0.0 when a token was taken, otherwise the number of seconds
            until one will be.
        """
        with self._lock:
            self._refill()
            wait = max(self._minute.seconds_until_token(), self._hour.seconds_until_token())
            if wait > 0:
                return wait
            self._minute.tokens -= 1.0
            self._hour.tokens -= 1.0
            return 0.0

    def fraction_left(self) -> float:
        """Remaining share of the tighter window."""
        with self._lock:
            self._refill()
            return min(self._minute.fraction_left, self._hour.fraction_left)

    def levels(self) -> tuple[float, float]:
        """Tokens left as ``(minute, hour)``."""
        with self._lock:
            self._refill()
            return self._minute.tokens, self._hour.tokens


class RequestRateLimiter:
    """Request budget for one backend adapter.

    With the QUEUE strategy ``acquire()`` blocks until a permit frees up or
    its timeout passes. With REJECT it raises as soon as the budget is empty.
    A warning is logged once each time the budget drops below
    ``warning_threshold`` of capacity.
    """

    DEFAULT_QUEUE_TIMEOUT = 30.0
    # Longest single sleep, so the acquire deadline is re-checked regularly
    MAX_SLEEP = 1.0

    def __init__(
        self,
        service_name: str = "backend",
        requests_per_minute: int = 60,
        requests_per_hour: int = 1000,
        strategy: RateLimitStrategy = RateLimitStrategy.QUEUE,
        warning_threshold: float = 0.2,
        enabled: bool = True,
        default_timeout: float | None = None,
    ) -> None:
        self.service_name = service_name
        self.requests_per_minute = requests_per_minute
        self.requests_per_hour = requests_per_hour
        self.strategy = strategy
        self._enabled = enabled
        self._warning_threshold = warning_threshold
        self._default_timeout = (
            self.DEFAULT_QUEUE_TIMEOUT if default_timeout is None else default_timeout
        )
        self._bucket = TokenBucket(requests_per_minute, requests_per_hour)
        self._lock = threading.Lock()
        self._running_low = False
        self.queued_requests = 0
        self.rejected_requests = 0

    @classmethod
    def from_config(cls, config: Config, service_name: str = "backend") -> RequestRateLimiter:
        rate_limit = config.rate_limit
        return cls(
            service_name=service_name,
            requests_per_minute=rate_limit.per_minute,
            requests_per_hour=rate_limit.per_hour,
            strategy=RateLimitStrategy(rate_limit.strategy),
            warning_threshold=rate_limit.warning_threshold,
            enabled=rate_limit.enabled,
            default_timeout=rate_limit.acquire_timeout,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    def acquire(self, timeout: float | None = None) -> bool:
        """Take a permit for one API request.

        Args:
            timeout: Seconds to wait for a permit. Defaults to 0 for REJECT
                and to the configured queue timeout for QUEUE. Cut down to
                what the thread's ``WaitBudget`` has left; cancelling the
                budget's token ends the wait.

        Returns:
            True if a permit was taken, False if the wait timed out.

        Raises:
            RateLimitExceededError: The strategy is REJECT and no permit
                became available in time.
        """
        if not self._enabled:
            return True

        if timeout is None:
            timeout = 0.0 if self.strategy == RateLimitStrategy.REJECT else self._default_timeout
        budget = current_wait_budget()
        if budget is not None:
            timeout = min(timeout, max(budget.remaining(), 0.0))

        start = time.monotonic()
        deadline = start + timeout
        queued = False

        while True:
            wait_hint = self._bucket.try_acquire()
            if wait_hint == 0.0:
                self._watch_budget()
                if queued:
                    logger.debug(
                        "%s API request permit acquired after %.2fs wait",
                        self.service_name,
                        time.monotonic() - start,
                    )
                return True

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return self._give_up(timeout)

            if not queued:
                queued = True
                with self._lock:
                    self.queued_requests += 1
            step = min(wait_hint, remaining, self.MAX_SLEEP)
            if budget is None:
                time.sleep(step)
            elif budget.token.wait(step):
                return self._give_up(timeout)

    def _watch_budget(self) -> None:
        running_low = self._bucket.fraction_left() <= self._warning_threshold
        with self._lock:
            crossed = running_low and not self._running_low
            self._running_low = running_low
        if crossed:
            minute, hour = self._bucket.levels()
            logger.warning(
                "%s API request budget running low - %.1f/%d left this minute, %.1f/%d this hour",
                self.service_name,
                minute,
                self.requests_per_minute,
                hour,
                self.requests_per_hour,
            )

    def _give_up(self, timeout: float) -> bool:
        with self._lock:
            self.rejected_requests += 1
        if self.strategy == RateLimitStrategy.REJECT:
            logger.warning("%s API request budget exceeded - request rejected", self.service_name)
            raise RateLimitExceededError(
                f"{self.service_name} API request budget exceeded. "
                f"Limit: {self.requests_per_minute}/min, {self.requests_per_hour}/hr"
            )
        logger.warning(
            "%s API request budget wait timed out after %.1fs", self.service_name, timeout
        )
        return False
