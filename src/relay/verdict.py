"""Map a completed run's outcome to a uniform verdict."""

from __future__ import annotations

from relay.models import Verdict
from relay.types import RunOutcome


def resolve_verdict(outcome: RunOutcome, cancelled_is_failure: bool) -> Verdict:
    """Resolve the verdict for a completed run.

    ============================  ====================  =====================
    outcome                       cancelled_is_failure  verdict
    ============================  ====================  =====================
    SUCCESS                       any                   SUCCEEDED
    FAILURE / NEUTRAL / UNKNOWN   any                   FAILED(outcome)
    CANCELLED                     True                  FAILED("cancelled")
    CANCELLED                     False                 CANCELLED
    ============================  ====================  =====================

    Args:
        outcome: Normalized outcome of the run.
        cancelled_is_failure: Fold backend cancellation into FAILED.

    Returns:
        The verdict. Pure function of its arguments.
    """
    if outcome == RunOutcome.SUCCESS:
        return Verdict.succeeded()
    if outcome == RunOutcome.CANCELLED:
        if cancelled_is_failure:
            return Verdict.failed(RunOutcome.CANCELLED.value)
        return Verdict.cancelled()
    return Verdict.failed(outcome.value)
