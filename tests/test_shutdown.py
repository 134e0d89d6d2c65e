"""Tests for signal-driven cancellation."""

import signal
from unittest.mock import MagicMock

from relay.clock import CancellationToken
from relay.shutdown import ShutdownHandler, create_shutdown_handler


class TestShutdownHandler:
    def test_signal_cancels_token(self) -> None:
        token = CancellationToken()
        handler = ShutdownHandler(token)

        handler.handle_signal(signal.SIGTERM, None)

        assert token.cancelled is True
        assert handler.shutdown_requested is True
        assert handler.signal_name == "SIGTERM"

    def test_request_shutdown_is_idempotent(self) -> None:
        callback = MagicMock()
        handler = ShutdownHandler(CancellationToken(), on_shutdown=callback)

        handler.request_shutdown()
        handler.handle_signal(signal.SIGINT, None)

        callback.assert_called_once_with()

    def test_not_requested_initially(self) -> None:
        handler = ShutdownHandler(CancellationToken())
        assert handler.shutdown_requested is False
        assert handler.signal_name is None

    def test_install_and_restore(self) -> None:
        previous_int = signal.getsignal(signal.SIGINT)
        previous_term = signal.getsignal(signal.SIGTERM)
        handler = ShutdownHandler(CancellationToken())

        handler.install_signal_handlers()
        try:
            assert signal.getsignal(signal.SIGINT) == handler.handle_signal
            assert signal.getsignal(signal.SIGTERM) == handler.handle_signal
        finally:
            handler.restore_signal_handlers()

        assert signal.getsignal(signal.SIGINT) == previous_int
        assert signal.getsignal(signal.SIGTERM) == previous_term


def test_create_shutdown_handler_installs() -> None:
    token = CancellationToken()
    handler = create_shutdown_handler(token)
    try:
        assert signal.getsignal(signal.SIGTERM) == handler.handle_signal
    finally:
        handler.restore_signal_handlers()
