"""Shared HTTP plumbing for the backend adapters.

``BaseHttpClient`` owns one pooled ``httpx.Client`` per adapter.
``call_with_rate_limit_retry`` repeats requests the backend turned away for
rate limiting, backing off exponentially with jitter and honoring the
``Retry-After`` and ``X-RateLimit-Reset`` headers sent by GitHub and Azure
DevOps:
https://docs.github.com/en/rest/using-the-rest-api/rate-limits-for-the-rest-api
"""

from __future__ import annotations

import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Self, TypeVar

import httpx

from relay.clock import current_wait_budget
from relay.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(10.0, read=30.0)

# Connection-level concurrency cap for everything sharing one adapter
DEFAULT_LIMITS = httpx.Limits(max_connections=10, max_keepalive_connections=5)

# Warn when the backend reports this many requests or fewer left
LOW_QUOTA_THRESHOLD = 10


@dataclass(frozen=True)
class RetryConfig:
    """Backoff for rate-limited requests.

    Retry ``n`` (0-based) waits ``initial_delay * 2**n``, or the server's own
    hint when it sends one, capped at ``max_delay`` either way. The result is
    scaled by a random factor in ``[jitter_min, jitter_max]`` so parallel
    orchestrations do not retry in lockstep.
    """

    max_retries: int = 4
    initial_delay: float = 1.0
    max_delay: float = 60.0
    jitter_min: float = 0.7
    jitter_max: float = 1.3

    def delay_for(self, attempt: int, server_hint: float | None = None) -> float:
        if server_hint is not None:
            base = min(server_hint, self.max_delay)
        else:
            base = min(self.initial_delay * 2**attempt, self.max_delay)
        return base * random.uniform(self.jitter_min, self.jitter_max)


DEFAULT_RETRY_CONFIG = RetryConfig()


class RateLimitRetriesExhausted(Exception):
    """The backend was still rate limiting after the last retry."""


def is_rate_limited(response: httpx.Response) -> bool:
    """Tell a rate limit apart from an ordinary 403.

    429 always counts. A 403 only counts when the backend says the quota is
    spent or asks the client to back off; otherwise it is a permission
    error and retrying will not help.
    """
    if response.status_code == 429:
        return True
    return response.status_code == 403 and (
        response.headers.get("X-RateLimit-Remaining") == "0"
        or "Retry-After" in response.headers
    )


def retry_delay_hint(response: httpx.Response) -> float | None:
    """Seconds the backend asked the client to wait, if it said so.

    ``Retry-After`` takes precedence over the ``X-RateLimit-Reset`` epoch
    timestamp. A reset time already in the past gives no hint.
    """
    retry_after = response.headers.get("Retry-After")
    if retry_after is not None:
        try:
            return float(retry_after)
        except ValueError:
            logger.warning("Ignoring malformed Retry-After header: %s", retry_after)

    reset_at = response.headers.get("X-RateLimit-Reset")
    if reset_at is not None:
        try:
            wait = int(reset_at) - int(time.time())
        except ValueError:
            logger.warning("Ignoring malformed X-RateLimit-Reset header: %s", reset_at)
        else:
            if wait > 0:
                return float(wait)
    return None


def warn_if_quota_low(response: httpx.Response) -> None:
    remaining = response.headers.get("X-RateLimit-Remaining", "")
    if remaining.isdigit() and int(remaining) <= LOW_QUOTA_THRESHOLD:
        logger.warning(
            "API rate limit near exhaustion. Remaining: %s, Reset: %s",
            remaining,
            response.headers.get("X-RateLimit-Reset", "unknown"),
        )


def call_with_rate_limit_retry(
    operation: Callable[[], T],
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    error_class: type[Exception] = RateLimitRetriesExhausted,
) -> T:
    """Run ``operation``, retrying while the backend rate limits it.

    Args:
        operation: Performs one request. Must raise ``httpx.HTTPStatusError``
            for error responses.
        config: Backoff settings.
        error_class: Raised once ``config.max_retries`` retries are used up,
            or when the thread's ``WaitBudget`` cannot cover the next backoff
            or is cancelled during it.

    Raises:
        httpx.HTTPStatusError: Any error response that is not a rate limit,
            immediately and without retrying.
    """
    budget = current_wait_budget()
    attempt = 0
    while True:
        try:
            return operation()
        except httpx.HTTPStatusError as e:
            if not is_rate_limited(e.response):
                raise
            if attempt >= config.max_retries:
                raise error_class(
                    f"Rate limit exceeded after {config.max_retries} retries"
                ) from e
            delay = config.delay_for(attempt, retry_delay_hint(e.response))
            if budget is not None and not budget.allows(delay):
                raise error_class(
                    f"Rate limited, backoff of {delay:.1f}s does not fit the remaining "
                    f"{max(budget.remaining(), 0.0):.1f}s"
                ) from e
            attempt += 1
            logger.warning(
                "Rate limited (attempt %s/%s), retrying in %.2fs",
                attempt,
                config.max_retries + 1,
                delay,
            )
            if budget is None:
                time.sleep(delay)
            elif budget.sleep(delay):
                raise error_class("Rate limit backoff cancelled") from e


class BaseHttpClient:
    """One lazily built, pooled ``httpx.Client`` per adapter.

    ``limits`` caps concurrent connections to the backend across every
    orchestration sharing the adapter. ``httpx.Client`` is thread-safe once
    built; construction is locked so concurrent first calls share one pool.
    """

    def __init__(
        self,
        headers: dict[str, str] | None = None,
        auth: httpx.Auth | tuple[str, str] | None = None,
        timeout: httpx.Timeout | None = None,
        limits: httpx.Limits | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Configure the client; nothing is opened until the first request.

        Args:
            headers: Sent with every request.
            auth: Passed to httpx as is.
            timeout: Defaults to ``DEFAULT_TIMEOUT``.
            limits: Defaults to ``DEFAULT_LIMITS``.
            transport: Replaces the network, e.g. ``httpx.MockTransport`` in tests.
        """
        self.timeout = timeout or DEFAULT_TIMEOUT
        self.limits = limits or DEFAULT_LIMITS
        self._headers = dict(headers or {})
        self._auth = auth
        self._transport = transport
        self._client: httpx.Client | None = None
        self._client_lock = threading.Lock()

    def _get_client(self) -> httpx.Client:
        with self._client_lock:
            if self._client is None:
                self._client = httpx.Client(
                    headers=self._headers,
                    auth=self._auth,
                    timeout=self.timeout,
                    limits=self.limits,
                    transport=self._transport,
                )
            return self._client

    def close(self) -> None:
        """Release pooled connections. The next request builds a new client."""
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
