"""Orchestrator facade: dispatch a workflow and await its verdict."""

from __future__ import annotations

from collections.abc import Callable

from relay.backends.base import BackendAdapter
from relay.clock import CancellationToken, Clock, SystemClock, WaitBudget, wait_budget
from relay.exceptions import BackendError, OrchestrationError, RunNotFound
from relay.logging import ContextAdapter, get_logger, log_verdict_summary
from relay.models import OrchestrationResult, PollConfig, TriggerRequest, Verdict
from relay.poll_loop import PollLoop, PollOutcome, PollTermination
from relay.verdict import resolve_verdict

logger = get_logger(__name__)


class Orchestrator:
    """Single entry point for trigger-and-await.

    An orchestrator keeps no per-call state, so one instance (and its
    adapter's connection pool) can serve concurrent ``run_and_await`` calls
    from several threads.

    Usage:
        with GitHubActionsAdapter(token="...") as adapter:
            result = Orchestrator(adapter).run_and_await(request, poll_config)
            if not result.verdict.is_success:
                ...
    """

    def __init__(self, adapter: BackendAdapter, clock: Clock | None = None) -> None:
        self.adapter = adapter
        self.clock = clock or SystemClock()

    def run_and_await(
        self,
        request: TriggerRequest,
        poll_config: PollConfig,
        on_reference_url: Callable[[str], None] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> OrchestrationResult:
        """Dispatch ``request`` and block until its run reaches a verdict.

        Args:
            request: What to run. Its dispatch time is stamped here.
            poll_config: Interval, deadline and cancellation policy.
            on_reference_url: Called with the run URL as soon as the run is
                correlated, before the verdict is known.
            cancel_token: Cancelling it aborts the wait and yields ABORTED.

        Returns:
            The result carrying exactly one verdict.

        Raises:
            OrchestrationError: If the dispatch was rejected, no run could be
                correlated, or the backend failed in a non-transient way.
                ``cause`` holds the underlying error.
        """
        token = cancel_token or CancellationToken()
        log = logger.with_context(
            backend=request.backend_kind.value,
            workflow=str(request.target),
            ref=request.ref,
        )
        started = self.clock.monotonic()

        if token.cancelled:
            log.warning("Cancelled before dispatch, nothing was triggered")
            return self._finish(log, request, OrchestrationResult(Verdict.aborted()), started)

        stamped = request.with_dispatch_time(self.clock.now())
        deadline = started + poll_config.max_wait_seconds
        log.info("Dispatching workflow")
        try:
            with wait_budget(WaitBudget(self.clock, deadline, token)):
                ack = self.adapter.dispatch(stamped)
        except BackendError as e:
            if token.cancelled:
                log.warning("Cancelled while dispatching: %s", e)
                return self._finish(log, request, OrchestrationResult(Verdict.aborted()), started)
            log.error("Dispatch failed: %s", e)
            raise OrchestrationError(f"Dispatch failed: {e}", cause=e) from e

        if ack.queue_url:
            log.debug("Dispatch queued at %s", ack.queue_url)

        loop = PollLoop(
            adapter=self.adapter,
            request=stamped,
            poll_config=poll_config,
            clock=self.clock,
            cancel_token=token,
            on_reference_url=on_reference_url,
            expected_run_id=ack.run_id,
            started_at=started,
        )
        try:
            outcome = loop.run()
        except RunNotFound as e:
            reference_url = loop.run_ref.reference_url if loop.run_ref else None
            raise OrchestrationError(
                f"Run not found: {e}", cause=e, reference_url=reference_url
            ) from e
        except BackendError as e:
            reference_url = loop.run_ref.reference_url if loop.run_ref else None
            log.error("Backend error while awaiting run: %s", e)
            raise OrchestrationError(
                f"Backend error: {e}", cause=e, reference_url=reference_url
            ) from e

        result = OrchestrationResult(
            verdict=self._verdict_for(outcome, poll_config),
            reference_url=outcome.run.reference_url if outcome.run else None,
            run_id=outcome.run.run_id if outcome.run else None,
        )
        return self._finish(log, request, result, started)

    @staticmethod
    def _verdict_for(outcome: PollOutcome, poll_config: PollConfig) -> Verdict:
        if outcome.termination == PollTermination.ABORTED:
            return Verdict.aborted()
        if outcome.termination == PollTermination.TIMED_OUT:
            return Verdict.timed_out()
        assert outcome.state is not None and outcome.state.outcome is not None
        return resolve_verdict(outcome.state.outcome, poll_config.cancelled_is_failure)

    def _finish(
        self,
        log: ContextAdapter,
        request: TriggerRequest,
        result: OrchestrationResult,
        started: float,
    ) -> OrchestrationResult:
        log_verdict_summary(log, str(request.target), result, self.clock.monotonic() - started)
        return result
