"""Data model shared by backends, the poll loop and the orchestrator."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from relay.exceptions import PollConfigError
from relay.types import BackendKind, RunOutcome, RunStatus, VerdictKind

if TYPE_CHECKING:
    from relay.config import Config

# Default tolerance for clock drift between this host and the backend when
# matching a dispatch to the run it created.
DEFAULT_CLOCK_SKEW_ALLOWANCE = 60.0

DEFAULT_MAX_FETCH_RETRIES = 3
DEFAULT_FETCH_RETRY_DELAY = 1.0


@dataclass(frozen=True)
class WorkflowTarget:
    """Identifies a workflow on a backend.

    Attributes:
        owner: GitHub owner, Azure DevOps organization, or Jenkins folder path.
        repository: GitHub repository or Azure DevOps project. Unused by Jenkins.
        workflow: Workflow file/id (GitHub), job name (Jenkins) or pipeline id
            (Azure DevOps).
    """

    owner: str
    repository: str
    workflow: str

    def __str__(self) -> str:
        parts = [p for p in (self.owner, self.repository, self.workflow) if p]
        return "/".join(parts)


@dataclass(frozen=True)
class TriggerRequest:
    """An immutable request to run a workflow on a ref.

    Attributes:
        backend_kind: Which backend the request targets.
        target: The workflow to run.
        ref: Branch or tag the workflow runs against.
        inputs: Input parameters passed to the workflow. Stored read-only.
        dispatched_at: UTC time the dispatch was sent. Set by the
            orchestrator via with_dispatch_time().
    """

    backend_kind: BackendKind
    target: WorkflowTarget
    ref: str
    inputs: Mapping[str, Any] = field(default_factory=dict)
    dispatched_at: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "inputs", MappingProxyType(dict(self.inputs)))

    def with_dispatch_time(self, dispatched_at: datetime) -> TriggerRequest:
        """Return a copy of this request stamped with the dispatch time."""
        return replace(self, inputs=dict(self.inputs), dispatched_at=dispatched_at)


@dataclass(frozen=True)
class DispatchAck:
    """Acknowledgement returned by a successful dispatch.

    Attributes:
        accepted_at: UTC time the backend accepted the dispatch.
        run_id: Run id when the backend returns one synchronously.
        queue_url: Queue item URL when the backend returns one (Jenkins).
    """

    accepted_at: datetime
    run_id: int | None = None
    queue_url: str | None = None


@dataclass(frozen=True)
class CandidateRun:
    """A run listed by a backend that may belong to a dispatch."""

    run_id: int
    created_at: datetime
    reference_url: str
    raw_status: str = ""


@dataclass(frozen=True)
class RunState:
    """Normalized state of a remote run.

    ``outcome`` is only set when ``status`` is COMPLETED.
    """

    status: RunStatus
    outcome: RunOutcome | None = None

    def __post_init__(self) -> None:
        if self.status == RunStatus.COMPLETED and self.outcome is None:
            raise ValueError("Completed run state requires an outcome")
        if self.status != RunStatus.COMPLETED and self.outcome is not None:
            raise ValueError(f"Outcome is only valid for completed runs, got {self.status}")

    @classmethod
    def pending(cls) -> RunState:
        return cls(RunStatus.PENDING)

    @classmethod
    def running(cls) -> RunState:
        return cls(RunStatus.RUNNING)

    @classmethod
    def completed(cls, outcome: RunOutcome) -> RunState:
        return cls(RunStatus.COMPLETED, outcome)

    @property
    def is_completed(self) -> bool:
        return self.status == RunStatus.COMPLETED


@dataclass(frozen=True)
class Verdict:
    """Terminal, backend-independent result of an orchestration.

    Attributes:
        kind: The verdict kind.
        reason: Why the run failed, for FAILED verdicts.
    """

    kind: VerdictKind
    reason: str = ""

    @classmethod
    def succeeded(cls) -> Verdict:
        return cls(VerdictKind.SUCCEEDED)

    @classmethod
    def failed(cls, reason: str) -> Verdict:
        return cls(VerdictKind.FAILED, reason)

    @classmethod
    def cancelled(cls) -> Verdict:
        return cls(VerdictKind.CANCELLED)

    @classmethod
    def timed_out(cls) -> Verdict:
        return cls(VerdictKind.TIMED_OUT, "deadline exceeded")

    @classmethod
    def aborted(cls) -> Verdict:
        return cls(VerdictKind.ABORTED, "cancelled by caller")

    @property
    def is_success(self) -> bool:
        """True when the deployment may proceed (succeeded or non-fatal cancel)."""
        return self.kind in (VerdictKind.SUCCEEDED, VerdictKind.CANCELLED)


@dataclass(frozen=True)
class OrchestrationResult:
    """Output surface of one orchestration call."""

    verdict: Verdict
    reference_url: str | None = None
    run_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert the result to a JSON-serializable dictionary."""
        return {
            "verdict": self.verdict.kind.value,
            "reason": self.verdict.reason,
            "reference_url": self.reference_url,
            "run_id": self.run_id,
        }


@dataclass(frozen=True)
class PollConfig:
    """Timing policy for one orchestration.

    Attributes:
        interval_seconds: Wait between polls. Must be positive.
        max_wait_seconds: Overall deadline from orchestration start. Must be
            greater than interval_seconds.
        cancelled_is_failure: Fold backend cancellation into FAILED.
        clock_skew_allowance_seconds: How far before the dispatch time a run
            may have been created and still be correlated.
        max_fetch_retries: In-place retries for transient errors per tick.
        fetch_retry_delay_seconds: Wait between in-place retries.

    Raises:
        PollConfigError: If any value is out of range.
    """

    interval_seconds: float
    max_wait_seconds: float
    cancelled_is_failure: bool = False
    clock_skew_allowance_seconds: float = DEFAULT_CLOCK_SKEW_ALLOWANCE
    max_fetch_retries: int = DEFAULT_MAX_FETCH_RETRIES
    fetch_retry_delay_seconds: float = DEFAULT_FETCH_RETRY_DELAY

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise PollConfigError(
                f"interval_seconds must be positive, got {self.interval_seconds}"
            )
        if self.max_wait_seconds <= self.interval_seconds:
            raise PollConfigError(
                f"max_wait_seconds ({self.max_wait_seconds}) must be greater than "
                f"interval_seconds ({self.interval_seconds})"
            )
        if self.clock_skew_allowance_seconds < 0:
            raise PollConfigError(
                "clock_skew_allowance_seconds must not be negative, "
                f"got {self.clock_skew_allowance_seconds}"
            )
        # bool is a subclass of int
        if isinstance(self.max_fetch_retries, bool) or not isinstance(
            self.max_fetch_retries, int
        ):
            raise PollConfigError(
                f"max_fetch_retries must be an integer, got {type(self.max_fetch_retries).__name__}"
            )
        if self.max_fetch_retries < 0:
            raise PollConfigError(
                f"max_fetch_retries must not be negative, got {self.max_fetch_retries}"
            )
        if self.fetch_retry_delay_seconds < 0:
            raise PollConfigError(
                "fetch_retry_delay_seconds must not be negative, "
                f"got {self.fetch_retry_delay_seconds}"
            )

    @classmethod
    def from_config(cls, config: Config) -> PollConfig:
        """Build a poll configuration from application configuration."""
        polling = config.polling
        return cls(
            interval_seconds=float(polling.interval),
            max_wait_seconds=float(polling.max_wait_minutes * 60),
            cancelled_is_failure=polling.cancelled_is_failure,
            clock_skew_allowance_seconds=polling.clock_skew_allowance,
            max_fetch_retries=polling.max_fetch_retries,
            fetch_retry_delay_seconds=polling.fetch_retry_delay,
        )


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp from a backend into an aware UTC datetime.

    Accepts a trailing ``Z`` and fractional seconds longer than Python's
    six digits (Azure DevOps returns seven).

    Raises:
        ValueError: If the value is not a parseable timestamp.
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    if "." in text:
        head, _, tail = text.partition(".")
        digits = ""
        rest = ""
        for i, ch in enumerate(tail):
            if not ch.isdigit():
                rest = tail[i:]
                break
            digits += ch
        text = f"{head}.{digits[:6]}{rest}" if digits else f"{head}{rest}"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
