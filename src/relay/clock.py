"""Clock and cancellation primitives for the poll loop.

The poll loop never calls ``time.sleep`` directly. It waits through a
``Clock`` and a ``CancellationToken`` so that:

- a caller (or a signal handler) can abort an orchestration and the
  current wait returns immediately, and
- tests can drive the loop with a fake clock instead of real sleeps.

Backoff waits deeper down (rate limit retries, request budget queueing)
have no token or clock of their own. The orchestrator installs a
``WaitBudget`` for the calling thread with ``wait_budget(...)`` and those
waits consult ``current_wait_budget()`` so they give up instead of sleeping
past the deadline, and stop as soon as the token is cancelled.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from relay.models import utc_now


class CancellationToken:
    """Thread-safe, one-way cancellation flag.

    Usage:
        token = CancellationToken()
        threading.Thread(target=orchestrator.run_and_await,
                         kwargs={"request": request, "poll_config": poll_config,
                                 "cancel_token": token}).start()
        ...
        token.cancel()  # the orchestration returns ABORTED promptly
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation. Idempotent."""
        self._event.set()

    def wait(self, timeout: float) -> bool:
        """Block until cancelled or ``timeout`` seconds pass.

        Returns:
            True if the token was cancelled.
        """
        return self._event.wait(timeout)


class Clock(ABC):
    """Source of time and cancellable waits."""

    @abstractmethod
    def monotonic(self) -> float:
        """Seconds on a monotonic clock, used for deadlines."""

    @abstractmethod
    def now(self) -> datetime:
        """Current wall-clock time as an aware UTC datetime."""

    @abstractmethod
    def sleep(self, seconds: float, token: CancellationToken) -> bool:
        """Wait for ``seconds`` unless cancelled first.

        Returns:
            True if the wait ended because the token was cancelled.
        """


class SystemClock(Clock):
    """Clock backed by the real system time."""

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return utc_now()

    def sleep(self, seconds: float, token: CancellationToken) -> bool:
        if seconds <= 0:
            return token.cancelled
        return token.wait(seconds)


@dataclass(frozen=True)
class WaitBudget:
    """The deadline and token that bound every wait of one orchestration.

    Attributes:
        clock: Clock the deadline is measured on.
        deadline: ``clock.monotonic()`` value after which no wait may end.
        token: Cancelling it interrupts any wait under this budget.
    """

    clock: Clock
    deadline: float
    token: CancellationToken

    def remaining(self) -> float:
        return self.deadline - self.clock.monotonic()

    def allows(self, seconds: float) -> bool:
        """True if a wait of ``seconds`` ends before the deadline and nothing is cancelled."""
        return not self.token.cancelled and seconds <= self.remaining()

    def sleep(self, seconds: float) -> bool:
        """Wait through the clock. Returns True if cancelled."""
        return self.clock.sleep(seconds, self.token)


# One active budget per thread; concurrent orchestrations each run on their own thread
_active = threading.local()


@contextmanager
def wait_budget(budget: WaitBudget) -> Iterator[WaitBudget]:
    """Make ``budget`` the current thread's budget for the duration of the block."""
    previous = getattr(_active, "budget", None)
    _active.budget = budget
    try:
        yield budget
    finally:
        _active.budget = previous


def current_wait_budget() -> WaitBudget | None:
    return getattr(_active, "budget", None)
