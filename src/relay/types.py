"""Enums shared across workflow relay.

All of them are ``StrEnum``s, so members compare equal to the plain strings
found in configuration and backend payloads::

    from relay.types import BackendKind

    if config.backend.kind == BackendKind.GITHUB:
        ...
    BackendKind.is_valid("jenkins")  # True
"""

from __future__ import annotations

from enum import StrEnum


class _ValidatedStrEnum(StrEnum):
    @classmethod
    def is_valid(cls, value: str) -> bool:
        """True if ``value`` is the value of one of the members."""
        return value in cls._value2member_map_

    @classmethod
    def values(cls) -> frozenset[str]:
        return frozenset(member.value for member in cls)


class BackendKind(_ValidatedStrEnum):
    """Supported CI backends."""

    GITHUB = "github"
    JENKINS = "jenkins"
    AZURE_DEVOPS = "azure_devops"


class RunStatus(_ValidatedStrEnum):
    """Where a remote run is in its lifecycle, whatever the backend calls it."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"


class RunOutcome(_ValidatedStrEnum):
    """How a completed remote run ended."""

    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    NEUTRAL = "neutral"
    UNKNOWN = "unknown"


class VerdictKind(_ValidatedStrEnum):
    """Terminal result of one orchestration.

    Values:
        SUCCEEDED: The run completed successfully.
        FAILED: The run completed with a failing outcome.
        CANCELLED: The backend cancelled the run and the caller treats
            that as non-fatal.
        TIMED_OUT: The deadline passed before the run completed.
        ABORTED: The caller cancelled the orchestration. Never produced by
            a backend-side cancellation.
    """

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    ABORTED = "aborted"


class PollPhase(_ValidatedStrEnum):
    AWAITING_CORRELATION = "awaiting_correlation"
    AWAITING_COMPLETION = "awaiting_completion"
    DONE = "done"


class RateLimitStrategy(_ValidatedStrEnum):
    """What a request does when the outgoing request budget is empty.

    QUEUE waits for a permit up to a timeout; REJECT fails at once.
    """

    QUEUE = "queue"
    REJECT = "reject"


VALID_BACKEND_KINDS = BackendKind.values()
VALID_RATE_LIMIT_STRATEGIES = RateLimitStrategy.values()
