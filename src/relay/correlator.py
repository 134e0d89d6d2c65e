"""Match a dispatch to the run it created.

Dispatch-style triggers (GitHub ``workflow_dispatch``, Jenkins
``buildWithParameters``) do not return a run id, so the run is found by
timing against a listing of recent runs. The listing may lag the dispatch
and the backend clock may drift from ours, so runs created slightly
before the recorded dispatch time are still accepted.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta

from relay.models import DEFAULT_CLOCK_SKEW_ALLOWANCE, CandidateRun


def correlate(
    candidates: Iterable[CandidateRun],
    dispatched_at: datetime,
    clock_skew_allowance: float = DEFAULT_CLOCK_SKEW_ALLOWANCE,
    expected_run_id: int | None = None,
) -> CandidateRun | None:
    """Select the run caused by a dispatch.

    The newest run created at or after ``dispatched_at - clock_skew_allowance``
    wins; ties on ``created_at`` go to the highest run id. The result does
    not depend on the order of ``candidates``.

    Args:
        candidates: Runs listed by the backend.
        dispatched_at: UTC time the dispatch was sent.
        clock_skew_allowance: Seconds of tolerated clock drift.
        expected_run_id: Run id returned by the dispatch call, if the backend
            provides one. Only that run can match.

    Returns:
        The selected run, or None if no candidate qualifies.
    """
    earliest = dispatched_at - timedelta(seconds=clock_skew_allowance)
    eligible = [
        run
        for run in candidates
        if run.created_at >= earliest
        and (expected_run_id is None or run.run_id == expected_run_id)
    ]
    if not eligible:
        return None
    return max(eligible, key=lambda run: (run.created_at, run.run_id))
