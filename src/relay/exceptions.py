"""Exception hierarchy for workflow relay.

Backend adapters raise the ``BackendError`` subclasses. The orchestrator
wraps anything that terminates a call in ``OrchestrationError`` so callers
only need to handle one exception type:

- ``DispatchError``: the backend refused the trigger (bad request, auth,
  malformed inputs). Fatal, never retried.
- ``RunNotFound``: no run could be correlated before the deadline, or a run
  id turned out to be invalid. Fatal.
- ``TransientFetchError``: network failures, timeouts, 5xx responses or an
  open circuit. Retried in place by the poll loop, bounded per tick.

A deadline passing while a run is still in progress is not an exception;
it surfaces as the ``TIMED_OUT`` verdict.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for all workflow relay errors."""

    pass


class ConfigurationError(RelayError):
    """Raised when required caller configuration is missing or invalid.

    Example:
        >>> raise ConfigurationError("RELAY_AUTH_TOKEN is required")
    """

    pass


class PollConfigError(ValueError):
    """Raised when poll configuration values are invalid."""

    pass


class BackendError(RelayError):
    """Base class for errors raised by backend adapters.

    Attributes:
        backend: Name of the backend that raised the error (e.g. "github").
        status_code: HTTP status code of the failed response, if any.
    """

    def __init__(
        self,
        message: str,
        backend: str = "",
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.status_code = status_code


class DispatchError(BackendError):
    """Raised when a workflow could not be dispatched."""

    pass


class RunNotFound(BackendError):
    """Raised when a run cannot be correlated or does not exist."""

    pass


class TransientFetchError(BackendError):
    """Raised when reading remote state failed in a retryable way."""

    pass


class OrchestrationError(RelayError):
    """Raised by the orchestrator when a call terminates without a verdict.

    Attributes:
        cause: The underlying error that ended the orchestration.
        reference_url: URL of the correlated run if one was found before
            the failure, otherwise None.
    """

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        reference_url: str | None = None,
    ) -> None:
        super().__init__(message)
        self.cause = cause
        self.reference_url = reference_url
