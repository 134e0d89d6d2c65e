"""Signal handling for the relay CLI.

SIGINT (Ctrl+C) and SIGTERM cancel the running orchestration through its
CancellationToken, so the current wait returns immediately and the
orchestration finishes with an ABORTED verdict instead of being killed
mid-request.
"""

from __future__ import annotations

import signal
from collections.abc import Callable
from types import FrameType

from relay.clock import CancellationToken
from relay.logging import get_logger

logger = get_logger(__name__)


class ShutdownHandler:
    """Turns shutdown signals into orchestration cancellation."""

    def __init__(
        self,
        cancel_token: CancellationToken,
        on_shutdown: Callable[[], None] | None = None,
    ) -> None:
        """Bind the handler to one orchestration's token.

        Args:
            cancel_token: Cancelled on the first shutdown signal.
            on_shutdown: Called once, right after the token is cancelled.
        """
        self._cancel_token = cancel_token
        self._on_shutdown = on_shutdown
        self._signal_name: str | None = None
        self._previous: dict[int, Callable[[int, FrameType | None], object] | int | None] = {}

    @property
    def shutdown_requested(self) -> bool:
        return self._cancel_token.cancelled

    @property
    def signal_name(self) -> str | None:
        """Name of the signal that requested shutdown, if any."""
        return self._signal_name

    def request_shutdown(self) -> None:
        """Cancel the orchestration. Safe to call more than once."""
        if self._cancel_token.cancelled:
            return
        logger.info("Shutdown requested, cancelling orchestration")
        self._cancel_token.cancel()

        if self._on_shutdown is not None:
            self._on_shutdown()

    def handle_signal(self, signum: int, frame: FrameType | None) -> None:
        """Signal callback; records which signal arrived and cancels."""
        self._signal_name = signal.Signals(signum).name
        logger.info("Received %s, aborting the wait...", self._signal_name)
        self.request_shutdown()

    def install_signal_handlers(self) -> None:
        """Install handlers for SIGINT and SIGTERM, remembering the previous ones."""
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous[signum] = signal.signal(signum, self.handle_signal)
        logger.debug("Signal handlers installed for SIGINT and SIGTERM")

    def restore_signal_handlers(self) -> None:
        """Put back the handlers that were active before installation."""
        for signum, previous in self._previous.items():
            signal.signal(signum, previous if previous is not None else signal.SIG_DFL)
        self._previous.clear()


def create_shutdown_handler(
    cancel_token: CancellationToken,
    on_shutdown: Callable[[], None] | None = None,
) -> ShutdownHandler:
    """Create a ShutdownHandler and install its signal handlers."""
    handler = ShutdownHandler(cancel_token, on_shutdown)
    handler.install_signal_handlers()
    return handler


__all__ = [
    "ShutdownHandler",
    "create_shutdown_handler",
]
