"""Shared pytest fixtures for workflow relay tests."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from unittest import mock

import pytest

from relay.clock import CancellationToken
from relay.logging import JSONFormatter, StructuredFormatter
from tests.mocks import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cancel_token() -> CancellationToken:
    return CancellationToken()


@pytest.fixture
def clean_env() -> Iterator[None]:
    """Run with no RELAY_* variables and without reading a .env file."""
    env = {key: value for key, value in os.environ.items() if not key.startswith("RELAY_")}
    with mock.patch.dict(os.environ, env, clear=True), mock.patch("relay.config.load_dotenv"):
        yield


@pytest.fixture(autouse=True)
def _restore_root_logging() -> Iterator[None]:
    """Undo handler and level changes made by setup_logging() in a test."""
    levels = {name: logging.getLogger(name).level for name in ("", "relay", "httpx")}
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        if isinstance(handler.formatter, (StructuredFormatter, JSONFormatter)):
            root.removeHandler(handler)
    for name, level in levels.items():
        logging.getLogger(name).setLevel(level)
