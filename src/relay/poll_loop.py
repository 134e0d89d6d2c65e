"""Poll loop and deadline controller.

Drives one orchestration after dispatch through

    AWAITING_CORRELATION -> AWAITING_COMPLETION -> DONE

under a single deadline measured from the start of the orchestration (or
of the loop, when it is used on its own). Each tick waits a fixed interval
(shortened only so it never overshoots the deadline). Transient read
errors are retried in place a bounded number of times per tick; a tick
that still fails is skipped and the loop carries on, so persistent errors
end the loop through the deadline.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TypeVar

from relay.backends.base import BackendAdapter
from relay.clock import CancellationToken, Clock, SystemClock, WaitBudget, wait_budget
from relay.correlator import correlate
from relay.exceptions import RunNotFound, TransientFetchError
from relay.logging import get_logger
from relay.models import CandidateRun, PollConfig, RunState, TriggerRequest
from relay.types import PollPhase

T = TypeVar("T")

logger = get_logger(__name__)


class PollTermination(StrEnum):
    """Why the poll loop stopped."""

    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    ABORTED = "aborted"


@dataclass(frozen=True)
class PollOutcome:
    """Result of a finished poll loop.

    Attributes:
        termination: Why the loop stopped.
        run: The correlated run, or None if the loop was aborted first.
        state: Last observed state of the run. Completed when
            ``termination`` is COMPLETED.
        elapsed_seconds: Time since the deadline started counting.
    """

    termination: PollTermination
    run: CandidateRun | None = None
    state: RunState | None = None
    elapsed_seconds: float = 0.0


class PollLoop:
    """Single-use state machine awaiting one dispatched run.

    A loop owns all of its mutable state, so concurrent orchestrations
    must each build their own instance.
    """

    def __init__(
        self,
        adapter: BackendAdapter,
        request: TriggerRequest,
        poll_config: PollConfig,
        clock: Clock | None = None,
        cancel_token: CancellationToken | None = None,
        on_reference_url: Callable[[str], None] | None = None,
        expected_run_id: int | None = None,
        started_at: float | None = None,
    ) -> None:
        """Initialize the poll loop.

        Args:
            adapter: Backend to poll.
            request: The dispatched request. ``dispatched_at`` must be set.
            poll_config: Interval, deadline and retry policy.
            clock: Time source. Defaults to the system clock.
            cancel_token: Token that aborts the loop when cancelled.
            on_reference_url: Called once with the run URL as soon as the
                run is correlated.
            expected_run_id: Run id returned by the dispatch, if any.
            started_at: ``clock.monotonic()`` at orchestration start. The
                deadline is ``max_wait_seconds`` after it, so time spent
                dispatching counts. Defaults to the moment ``run()`` starts.

        Raises:
            ValueError: If the request has no dispatch time.
        """
        if request.dispatched_at is None:
            raise ValueError("request.dispatched_at must be set before polling")
        self.adapter = adapter
        self.request = request
        self.config = poll_config
        self.clock = clock or SystemClock()
        self.cancel_token = cancel_token or CancellationToken()
        self.on_reference_url = on_reference_url
        self.expected_run_id = expected_run_id

        self.phase = PollPhase.AWAITING_CORRELATION
        self.run_ref: CandidateRun | None = None
        self.last_state: RunState | None = None
        self._started_at = started_at
        self._running = False
        self._deadline: float = 0.0
        self._log = logger.with_context(
            backend=request.backend_kind.value,
            workflow=str(request.target),
            ref=request.ref,
        )

    def remaining(self) -> float:
        """Seconds left before the deadline."""
        return self._deadline - self.clock.monotonic()

    def run(self) -> PollOutcome:
        """Poll until the run completes, the deadline passes or the loop is aborted.

        Returns:
            The outcome. ``termination`` is COMPLETED, TIMED_OUT (deadline
            passed while awaiting completion) or ABORTED.

        Raises:
            RunNotFound: If no run was correlated before the deadline, or the
                backend reports the correlated run id as unknown.
            BackendError: For non-transient adapter failures.
        """
        if self._running:
            raise RuntimeError("PollLoop instances are single-use")
        self._running = True
        if self._started_at is None:
            self._started_at = self.clock.monotonic()
        self._deadline = self._started_at + self.config.max_wait_seconds

        self._log.info(
            "Awaiting run (interval=%ss, max_wait=%ss, %.1fs left)",
            self.config.interval_seconds,
            self.config.max_wait_seconds,
            max(self.remaining(), 0.0),
            extra={"phase": self.phase.value},
        )

        # Backoff inside adapter calls must not outlive the deadline either
        with wait_budget(WaitBudget(self.clock, self._deadline, self.cancel_token)):
            return self._poll()

    def _poll(self) -> PollOutcome:
        while True:
            if self.cancel_token.cancelled:
                self._log.warning("Polling aborted by caller", extra={"phase": self.phase.value})
                return self._finish(PollTermination.ABORTED)

            if self.remaining() <= 0:
                return self._on_deadline()

            if self.phase == PollPhase.AWAITING_CORRELATION:
                if self._try_correlate():
                    # Fetch the state on this tick without waiting a full interval
                    continue
            else:
                state = self._fetch_with_retry(self._fetch_state, "run state")
                if state is not None:
                    self._observe(state)
                    if state.is_completed:
                        return self._finish(PollTermination.COMPLETED)

            self._wait(self.config.interval_seconds)

    def _try_correlate(self) -> bool:
        candidates = self._fetch_with_retry(self._list_candidates, "candidate runs")
        if candidates is None:
            return False

        assert self.request.dispatched_at is not None
        match = correlate(
            candidates,
            self.request.dispatched_at,
            self.config.clock_skew_allowance_seconds,
            self.expected_run_id,
        )
        if match is None:
            self._log.debug(
                "No matching run among %d candidates",
                len(candidates),
                extra={"diagnostic_tag": "polling", "phase": self.phase.value},
            )
            return False

        self.run_ref = match
        self.phase = PollPhase.AWAITING_COMPLETION
        self._log = self._log.with_context(run_id=match.run_id)
        self._log.info(
            "Correlated run %s: %s",
            match.run_id,
            match.reference_url,
            extra={"phase": self.phase.value, "reference_url": match.reference_url},
        )
        self._publish(match.reference_url)
        return True

    def _publish(self, reference_url: str) -> None:
        """Hand the run URL to the caller. A failing callback does not stop polling."""
        if self.on_reference_url is None:
            return
        try:
            self.on_reference_url(reference_url)
        except Exception as e:
            self._log.warning(
                "Reference URL callback failed, continuing to poll: %s",
                e,
                exc_info=True,
                extra={"phase": self.phase.value},
            )

    def _list_candidates(self) -> list[CandidateRun]:
        return self.adapter.list_candidate_runs(self.request)

    def _fetch_state(self) -> RunState:
        assert self.run_ref is not None
        return self.adapter.get_run_state(self.request.target, self.run_ref.run_id)

    def _observe(self, state: RunState) -> None:
        previous = self.last_state
        self.last_state = state
        if previous is None or previous.status != state.status:
            self._log.info(
                "Run %s is %s",
                self.run_ref.run_id if self.run_ref else "?",
                state.status.value,
                extra={"phase": self.phase.value},
            )
        else:
            self._log.debug(
                "Run still %s",
                state.status.value,
                extra={"diagnostic_tag": "polling", "phase": self.phase.value},
            )

    def _fetch_with_retry(self, operation: Callable[[], T], what: str) -> T | None:
        """Call ``operation``, retrying transient errors in place.

        Returns:
            The operation's result, or None if this tick's retries were
            exhausted, the deadline passed, or the loop was cancelled.
        """
        attempts = self.config.max_fetch_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return operation()
            except TransientFetchError as e:
                if attempt >= attempts:
                    self._log.warning(
                        "Fetching %s failed %d times, skipping this tick: %s",
                        what,
                        attempts,
                        e,
                        extra={"phase": self.phase.value},
                    )
                    return None
                self._log.warning(
                    "Transient error fetching %s (attempt %d/%d): %s",
                    what,
                    attempt,
                    attempts,
                    e,
                    extra={"phase": self.phase.value},
                )
                if self._wait(self.config.fetch_retry_delay_seconds):
                    return None
                if self.remaining() <= 0:
                    return None
        return None

    def _wait(self, seconds: float) -> bool:
        """Wait without passing the deadline.

        Returns:
            True if the wait was cut short by cancellation.
        """
        delay = min(seconds, max(self.remaining(), 0.0))
        return self.clock.sleep(delay, self.cancel_token)

    def _on_deadline(self) -> PollOutcome:
        if self.phase == PollPhase.AWAITING_CORRELATION:
            self.phase = PollPhase.DONE
            self._log.error(
                "No run found for dispatch within %ss", self.config.max_wait_seconds
            )
            raise RunNotFound(
                f"No run of {self.request.target} on ref '{self.request.ref}' appeared "
                f"within {self.config.max_wait_seconds:g}s of dispatch",
                backend=self.request.backend_kind.value,
            )
        self._log.warning(
            "Deadline of %ss passed while run was %s",
            self.config.max_wait_seconds,
            self.last_state.status.value if self.last_state else "unobserved",
            extra={"phase": self.phase.value},
        )
        return self._finish(PollTermination.TIMED_OUT)

    def _finish(self, termination: PollTermination) -> PollOutcome:
        self.phase = PollPhase.DONE
        assert self._started_at is not None
        return PollOutcome(
            termination=termination,
            run=self.run_ref,
            state=self.last_state,
            elapsed_seconds=self.clock.monotonic() - self._started_at,
        )
