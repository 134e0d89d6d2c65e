"""Backend adapter interface and shared HTTP implementation.

Every backend implements three operations: ``dispatch``,
``list_candidate_runs`` and ``get_run_state``. The poll loop and the
orchestrator only ever talk to this interface, so adding a backend means
writing one adapter.

``HttpBackendAdapter`` carries the parts every REST backend shares:
connection pooling, the circuit breaker, the request budget, rate limit
retries, and translation of httpx failures into the relay error taxonomy.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, Self

import httpx

from relay.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from relay.exceptions import BackendError, DispatchError, RunNotFound, TransientFetchError
from relay.http import (
    DEFAULT_RETRY_CONFIG,
    BaseHttpClient,
    RateLimitRetriesExhausted,
    RetryConfig,
    call_with_rate_limit_retry,
    warn_if_quota_low,
)
from relay.logging import get_logger
from relay.models import CandidateRun, DispatchAck, RunState, TriggerRequest, WorkflowTarget
from relay.rate_limiter import RateLimitExceededError, RequestRateLimiter
from relay.types import BackendKind

logger = get_logger(__name__)

# Number of recent runs requested from a backend per listing
DEFAULT_LIST_LIMIT = 20

# Input values a backend can accept as-is
InputValue = str | int | float | bool


class BackendAdapter(ABC):
    """Abstract interface for CI backends.

    Implementations:
    - GitHubActionsAdapter, JenkinsAdapter, AzureDevOpsAdapter (production)
    - Scripted fakes (testing)
    """

    kind: BackendKind

    @abstractmethod
    def dispatch(self, request: TriggerRequest) -> DispatchAck:
        """Ask the backend to start the workflow.

        Raises:
            DispatchError: On a non-2xx response or malformed inputs.
        """

    @abstractmethod
    def list_candidate_runs(self, request: TriggerRequest) -> list[CandidateRun]:
        """List recent runs of the target workflow on the request's ref.

        Read-only and idempotent.

        Returns:
            Runs ordered most recent first.

        Raises:
            TransientFetchError: On network errors or 5xx responses.
        """

    @abstractmethod
    def get_run_state(self, target: WorkflowTarget, run_id: int) -> RunState:
        """Fetch the normalized state of one run.

        Raises:
            TransientFetchError: On network errors or 5xx responses.
            RunNotFound: If the run id is unknown to the backend.
        """

    def close(self) -> None:
        """Release any resources held by the adapter."""

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


def validate_inputs(inputs: Mapping[str, Any], backend: str) -> dict[str, InputValue]:
    """Check workflow inputs before they are sent.

    Args:
        inputs: Input parameters from the trigger request.
        backend: Backend name for error messages.

    Returns:
        A plain dict copy of the inputs.

    Raises:
        DispatchError: If a key is not a non-empty string or a value is not
            a scalar.
    """
    validated: dict[str, InputValue] = {}
    for key, value in inputs.items():
        if not isinstance(key, str) or not key.strip():
            raise DispatchError(f"Invalid input name: {key!r}", backend=backend)
        if not isinstance(value, (str, int, float, bool)):
            raise DispatchError(
                f"Input '{key}' must be a string, number or boolean, "
                f"got {type(value).__name__}",
                backend=backend,
            )
        validated[key] = value
    return validated


def _error_message(response: httpx.Response) -> str:
    """Pull a human-readable message out of an error response body."""
    try:
        data = response.json()
    except ValueError:
        text = response.text.strip()
        return text[:200]
    if isinstance(data, dict):
        for key in ("message", "detail", "error"):
            if isinstance(data.get(key), str):
                return data[key]
    return ""


class HttpBackendAdapter(BaseHttpClient, BackendAdapter):
    """Base class for REST backend adapters.

    Subclasses build URLs and parse payloads; this class sends the request
    and maps failures:

    ===========================  ==================  =====================
    failure                      dispatch            reads
    ===========================  ==================  =====================
    open circuit / no budget     DispatchError       TransientFetchError
    timeout / network error      DispatchError       TransientFetchError
    5xx                          DispatchError       TransientFetchError
    rate limit retries spent     DispatchError       TransientFetchError
    404                          DispatchError       RunNotFound
    other 4xx                    DispatchError       BackendError
    ===========================  ==================  =====================
    """

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        auth: httpx.Auth | tuple[str, str] | None = None,
        timeout: httpx.Timeout | None = None,
        limits: httpx.Limits | None = None,
        retry_config: RetryConfig | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        rate_limiter: RequestRateLimiter | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            base_url: API base URL without trailing slash.
            headers: Headers sent with every request.
            auth: Authentication passed to httpx.
            timeout: Optional custom timeout configuration.
            limits: Connection pool limits (concurrency cap).
            retry_config: Retry configuration for rate limiting.
            circuit_breaker: Circuit breaker instance. If not provided, a
                default one is created for this backend from the environment.
            rate_limiter: Request budget. If not provided, requests are not
                budgeted.
            transport: Optional httpx transport, e.g. httpx.MockTransport.
        """
        super().__init__(
            headers=headers,
            auth=auth,
            timeout=timeout,
            limits=limits,
            transport=transport,
        )
        self.base_url = base_url.rstrip("/")
        self.retry_config = retry_config or DEFAULT_RETRY_CONFIG
        self._circuit_breaker = circuit_breaker or CircuitBreaker(
            service_name=self.kind.value,
            config=CircuitBreakerConfig.from_env(self.kind.value),
        )
        self._rate_limiter = rate_limiter or RequestRateLimiter(
            service_name=self.kind.value, enabled=False
        )

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    def _send(
        self,
        method: str,
        url: str,
        *,
        for_dispatch: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request and translate failures into relay errors.

        Args:
            method: HTTP method.
            url: Absolute URL.
            for_dispatch: Whether this request dispatches a workflow. Decides
                between DispatchError and the read-side error types.
            **kwargs: Passed through to ``httpx.Client.request``.

        Returns:
            The successful (2xx) response.
        """
        backend = self.kind.value
        unavailable: type[BackendError] = DispatchError if for_dispatch else TransientFetchError

        if not self._circuit_breaker.allow_request():
            raise unavailable(
                f"{backend} circuit breaker is open - service may be unavailable. "
                f"State: {self._circuit_breaker.state.value}",
                backend=backend,
            )

        try:
            if not self._rate_limiter.acquire():
                raise unavailable(f"{backend} request budget exhausted", backend=backend)
        except RateLimitExceededError as e:
            raise unavailable(str(e), backend=backend) from e

        logger.debug("%s %s", method, url, extra={"diagnostic_tag": "http"})

        def do_request() -> httpx.Response:
            client = self._get_client()
            response = client.request(method, url, **kwargs)
            warn_if_quota_low(response)
            response.raise_for_status()
            return response

        try:
            response = call_with_rate_limit_retry(do_request, self.retry_config)
        except RateLimitRetriesExhausted as e:
            raise unavailable(f"{backend} {e}", backend=backend) from e
        except httpx.TimeoutException as e:
            self._circuit_breaker.record_failure(e)
            raise unavailable(f"{backend} request timed out: {e}", backend=backend) from e
        except httpx.HTTPStatusError as e:
            raise self._map_status_error(e, for_dispatch) from e
        except httpx.RequestError as e:
            self._circuit_breaker.record_failure(e)
            raise unavailable(f"{backend} request failed: {e}", backend=backend) from e

        self._circuit_breaker.record_success()
        return response

    def _map_status_error(self, error: httpx.HTTPStatusError, for_dispatch: bool) -> BackendError:
        backend = self.kind.value
        status = error.response.status_code
        detail = _error_message(error.response)
        message = f"{backend} request failed with status {status}"
        if detail:
            message += f": {detail}"

        if status >= 500:
            self._circuit_breaker.record_failure(error)
            if for_dispatch:
                return DispatchError(message, backend=backend, status_code=status)
            return TransientFetchError(message, backend=backend, status_code=status)

        # Client errors say nothing about backend health
        self._circuit_breaker.record_success()
        if for_dispatch:
            return DispatchError(message, backend=backend, status_code=status)
        if status == 404:
            return RunNotFound(message, backend=backend, status_code=status)
        return BackendError(message, backend=backend, status_code=status)

    def _json(self, response: httpx.Response) -> Any:
        """Decode a JSON body, treating garbage as a transient read failure."""
        try:
            return response.json()
        except ValueError as e:
            raise TransientFetchError(
                f"{self.kind.value} returned a non-JSON response: {e}",
                backend=self.kind.value,
                status_code=response.status_code,
            ) from e
