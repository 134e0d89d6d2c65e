"""Tests for the orchestrator facade."""

from __future__ import annotations

import logging

import pytest

from relay.backends.github import GitHubActionsAdapter
from relay.circuit_breaker import CircuitBreaker
from relay.clock import CancellationToken
from relay.exceptions import (
    BackendError,
    DispatchError,
    OrchestrationError,
    RunNotFound,
    TransientFetchError,
)
from relay.http import RetryConfig
from relay.models import RunState
from relay.orchestrator import Orchestrator
from relay.types import RunOutcome, VerdictKind
from tests.helpers import BASE_TIME, make_candidate, make_poll_config, make_request
from tests.mocks import FakeClock, FakeGitHubBackend, ScriptedAdapter


def completed_adapter(clock: FakeClock, outcome: RunOutcome, **kwargs: object) -> ScriptedAdapter:
    return ScriptedAdapter(
        clock,
        runs=[(1.0, make_candidate(42, created_offset=1.0))],
        states=[RunState.running(), RunState.completed(outcome)],
        **kwargs,  # type: ignore[arg-type]
    )


class TestRunAndAwait:
    """Tests for Orchestrator.run_and_await()."""

    def test_success(self, clock: FakeClock) -> None:
        adapter = completed_adapter(clock, RunOutcome.SUCCESS)
        result = Orchestrator(adapter, clock=clock).run_and_await(
            make_request(), make_poll_config()
        )

        assert result.verdict.kind == VerdictKind.SUCCEEDED
        assert result.verdict.is_success
        assert result.run_id == 42
        assert result.reference_url == "https://ci.example.com/runs/42"

    def test_dispatch_time_is_stamped_once(self, clock: FakeClock) -> None:
        clock.advance(3.0)
        adapter = completed_adapter(clock, RunOutcome.SUCCESS)
        request = make_request()

        Orchestrator(adapter, clock=clock).run_and_await(request, make_poll_config())

        assert len(adapter.dispatched) == 1
        assert adapter.dispatched[0].dispatched_at == clock.at(3.0)
        # The caller's request is left untouched
        assert request.dispatched_at is None

    def test_reference_url_published_before_verdict(self, clock: FakeClock) -> None:
        adapter = completed_adapter(clock, RunOutcome.FAILURE)
        events: list[str] = []

        result = Orchestrator(adapter, clock=clock).run_and_await(
            make_request(), make_poll_config(), on_reference_url=events.append
        )
        events.append(result.verdict.kind.value)

        assert events == ["https://ci.example.com/runs/42", "failed"]

    def test_failed_run(self, clock: FakeClock) -> None:
        adapter = completed_adapter(clock, RunOutcome.FAILURE)
        result = Orchestrator(adapter, clock=clock).run_and_await(
            make_request(), make_poll_config()
        )

        assert result.verdict.kind == VerdictKind.FAILED
        assert result.verdict.reason == "failure"
        assert not result.verdict.is_success

    def test_cancelled_run_is_non_fatal_by_default(self, clock: FakeClock) -> None:
        adapter = completed_adapter(clock, RunOutcome.CANCELLED)
        result = Orchestrator(adapter, clock=clock).run_and_await(
            make_request(), make_poll_config(cancelled_is_failure=False)
        )

        assert result.verdict.kind == VerdictKind.CANCELLED
        assert result.verdict.is_success

    def test_cancelled_run_can_be_a_failure(self, clock: FakeClock) -> None:
        adapter = completed_adapter(clock, RunOutcome.CANCELLED)
        result = Orchestrator(adapter, clock=clock).run_and_await(
            make_request(), make_poll_config(cancelled_is_failure=True)
        )

        assert result.verdict.kind == VerdictKind.FAILED
        assert result.verdict.reason == "cancelled"

    def test_timed_out(self, clock: FakeClock) -> None:
        adapter = ScriptedAdapter(
            clock, runs=[(0.0, make_candidate(3))], states=[RunState.running()]
        )
        result = Orchestrator(adapter, clock=clock).run_and_await(
            make_request(), make_poll_config(interval_seconds=5.0, max_wait_seconds=20.0)
        )

        assert result.verdict.kind == VerdictKind.TIMED_OUT
        assert result.run_id == 3
        assert clock.monotonic() == 20.0

    def test_persistent_transient_errors_time_out(self, clock: FakeClock) -> None:
        adapter = ScriptedAdapter(
            clock,
            runs=[(0.0, make_candidate(3))],
            states=[TransientFetchError("503")],
        )
        result = Orchestrator(adapter, clock=clock).run_and_await(
            make_request(), make_poll_config(interval_seconds=5.0, max_wait_seconds=20.0)
        )

        assert result.verdict.kind == VerdictKind.TIMED_OUT

    def test_caller_abort_is_distinct_from_backend_cancel(self, clock: FakeClock) -> None:
        token = CancellationToken()
        clock.cancel_at(6.0, token)
        adapter = ScriptedAdapter(
            clock, runs=[(0.0, make_candidate(3))], states=[RunState.running()]
        )
        result = Orchestrator(adapter, clock=clock).run_and_await(
            make_request(), make_poll_config(), cancel_token=token
        )

        assert result.verdict.kind == VerdictKind.ABORTED
        assert result.verdict.kind != VerdictKind.CANCELLED
        assert not result.verdict.is_success
        assert result.run_id == 3

    def test_cancelled_before_dispatch_triggers_nothing(self, clock: FakeClock) -> None:
        token = CancellationToken()
        token.cancel()
        adapter = completed_adapter(clock, RunOutcome.SUCCESS)

        result = Orchestrator(adapter, clock=clock).run_and_await(
            make_request(), make_poll_config(), cancel_token=token
        )

        assert result.verdict.kind == VerdictKind.ABORTED
        assert adapter.dispatched == []

    def test_dispatch_run_id_is_pinned(self, clock: FakeClock) -> None:
        adapter = ScriptedAdapter(
            clock,
            runs=[(0.0, make_candidate(7)), (0.0, make_candidate(9, created_offset=2.0))],
            states=[RunState.completed(RunOutcome.SUCCESS)],
            dispatch_run_id=7,
        )
        result = Orchestrator(adapter, clock=clock).run_and_await(
            make_request(), make_poll_config()
        )

        assert result.run_id == 7

    def test_failing_url_callback_does_not_end_the_orchestration(self, clock: FakeClock) -> None:
        def broken_pipe(url: str) -> None:
            raise BrokenPipeError(32, "Broken pipe")

        adapter = completed_adapter(clock, RunOutcome.SUCCESS)
        result = Orchestrator(adapter, clock=clock).run_and_await(
            make_request(), make_poll_config(), on_reference_url=broken_pipe
        )

        assert result.verdict.kind == VerdictKind.SUCCEEDED
        assert result.reference_url == "https://ci.example.com/runs/42"


class TestDeadlineIncludesDispatch:
    """The deadline counts from orchestration start, not from the first poll."""

    def test_slow_dispatch_leaves_less_time_to_correlate(self, clock: FakeClock) -> None:
        adapter = ScriptedAdapter(clock, dispatch_seconds=50.0)

        with pytest.raises(OrchestrationError) as exc_info:
            Orchestrator(adapter, clock=clock).run_and_await(
                make_request(), make_poll_config(max_wait_seconds=60.0)
            )

        assert isinstance(exc_info.value.cause, RunNotFound)
        assert clock.monotonic() == 60.0
        assert adapter.list_calls == [50.0, 55.0]

    def test_slow_dispatch_leaves_less_time_to_complete(self, clock: FakeClock) -> None:
        adapter = ScriptedAdapter(
            clock,
            runs=[(50.0, make_candidate(8, created_offset=1.0))],
            states=[RunState.running()],
            dispatch_seconds=50.0,
        )
        result = Orchestrator(adapter, clock=clock).run_and_await(
            make_request(), make_poll_config(max_wait_seconds=60.0)
        )

        assert result.verdict.kind == VerdictKind.TIMED_OUT
        assert clock.monotonic() == 60.0


class TestRateLimitedBackend:
    """Rate limit backoff stays inside the deadline and honors cancellation."""

    RETRY = RetryConfig(jitter_min=1.0, jitter_max=1.0)

    def make_adapter(self, backend: FakeGitHubBackend) -> GitHubActionsAdapter:
        return GitHubActionsAdapter(
            token="ghp_test",
            retry_config=self.RETRY,
            circuit_breaker=CircuitBreaker("github"),
            transport=backend.transport,
        )

    def test_hour_long_retry_after_still_times_out_on_schedule(self, clock: FakeClock) -> None:
        backend = FakeGitHubBackend(clock, state_retry_after="3600")

        with self.make_adapter(backend) as adapter:
            result = Orchestrator(adapter, clock=clock).run_and_await(
                make_request(), make_poll_config(max_wait_seconds=60.0)
            )

        assert result.verdict.kind == VerdictKind.TIMED_OUT
        assert result.run_id == 100
        assert clock.monotonic() == 60.0
        assert max(clock.sleeps) == 60.0

    def test_cancel_during_backoff_aborts_promptly(self, clock: FakeClock) -> None:
        backend = FakeGitHubBackend(clock, state_retry_after="3600")
        token = CancellationToken()
        clock.cancel_at(10.0, token)

        with self.make_adapter(backend) as adapter:
            result = Orchestrator(adapter, clock=clock).run_and_await(
                make_request(), make_poll_config(max_wait_seconds=600.0), cancel_token=token
            )

        assert result.verdict.kind == VerdictKind.ABORTED
        assert result.run_id == 100
        assert clock.monotonic() == 10.0

    def test_cancel_during_dispatch_backoff_aborts(self, clock: FakeClock) -> None:
        backend = FakeGitHubBackend(clock, dispatch_status=429)
        token = CancellationToken()
        clock.cancel_at(0.5, token)

        with self.make_adapter(backend) as adapter:
            result = Orchestrator(adapter, clock=clock).run_and_await(
                make_request(), make_poll_config(), cancel_token=token
            )

        assert result.verdict.kind == VerdictKind.ABORTED
        assert result.run_id is None
        assert backend.runs == {}


class TestErrors:
    """Tests for errors surfacing as OrchestrationError."""

    def test_dispatch_error_is_wrapped(self, clock: FakeClock) -> None:
        cause = DispatchError("Unexpected inputs provided", backend="github", status_code=422)
        adapter = ScriptedAdapter(clock, dispatch_error=cause)

        with pytest.raises(OrchestrationError) as exc_info:
            Orchestrator(adapter, clock=clock).run_and_await(make_request(), make_poll_config())

        assert exc_info.value.cause is cause
        assert exc_info.value.reference_url is None
        assert adapter.list_calls == []

    def test_run_not_found_is_wrapped(self, clock: FakeClock) -> None:
        adapter = ScriptedAdapter(clock)

        with pytest.raises(OrchestrationError) as exc_info:
            Orchestrator(adapter, clock=clock).run_and_await(
                make_request(), make_poll_config(max_wait_seconds=60.0)
            )

        assert isinstance(exc_info.value.cause, RunNotFound)
        assert clock.monotonic() == 60.0

    def test_backend_error_after_correlation_keeps_reference_url(self, clock: FakeClock) -> None:
        adapter = ScriptedAdapter(
            clock,
            runs=[(0.0, make_candidate(5))],
            states=[BackendError("Bad credentials", backend="github", status_code=401)],
        )

        with pytest.raises(OrchestrationError) as exc_info:
            Orchestrator(adapter, clock=clock).run_and_await(make_request(), make_poll_config())

        assert exc_info.value.reference_url == "https://ci.example.com/runs/5"
        assert isinstance(exc_info.value.cause, BackendError)


class TestLogging:
    """Tests for the verdict summary log line."""

    def test_logs_verdict_summary(self, clock: FakeClock, caplog: pytest.LogCaptureFixture) -> None:
        adapter = completed_adapter(clock, RunOutcome.SUCCESS)
        with caplog.at_level(logging.INFO, logger="relay"):
            Orchestrator(adapter, clock=clock).run_and_await(make_request(), make_poll_config())

        summaries = [r for r in caplog.records if "finished" in r.getMessage()]
        assert len(summaries) == 1
        assert "SUCCEEDED" in summaries[0].getMessage()
        assert getattr(summaries[0], "verdict") == "succeeded"

    def test_failed_verdict_logs_at_error(
        self, clock: FakeClock, caplog: pytest.LogCaptureFixture
    ) -> None:
        adapter = completed_adapter(clock, RunOutcome.FAILURE)
        with caplog.at_level(logging.INFO, logger="relay"):
            Orchestrator(adapter, clock=clock).run_and_await(make_request(), make_poll_config())

        summary = next(r for r in caplog.records if "finished" in r.getMessage())
        assert summary.levelno == logging.ERROR


class TestStatelessness:
    """One orchestrator serves several calls without carrying state over."""

    def test_sequential_calls_are_independent(self) -> None:
        clock = FakeClock(start=BASE_TIME)
        adapter = ScriptedAdapter(
            clock,
            runs=[(0.0, make_candidate(1))],
            states=[RunState.completed(RunOutcome.SUCCESS)],
        )
        orchestrator = Orchestrator(adapter, clock=clock)

        first = orchestrator.run_and_await(make_request(ref="main"), make_poll_config())
        second = orchestrator.run_and_await(make_request(ref="main"), make_poll_config())

        assert first == second
        assert len(adapter.dispatched) == 2
