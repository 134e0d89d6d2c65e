"""Test helper functions for workflow relay tests.

These helpers build requests, runs and configuration with sensible
defaults while allowing customization.

Usage
=====

Import and use helpers directly in tests::

    from tests.helpers import make_candidate, make_poll_config, make_request

    def test_example():
        request = make_request(ref="release")
        config = make_poll_config(interval_seconds=5, max_wait_seconds=60)
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from relay.config import BackendConfig, Config, PollingConfig, RateLimitConfig
from relay.models import CandidateRun, PollConfig, TriggerRequest, WorkflowTarget
from relay.types import BackendKind

BASE_TIME = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


def make_target(
    owner: str = "acme",
    repository: str = "deploy-tools",
    workflow: str = "deploy.yml",
) -> WorkflowTarget:
    return WorkflowTarget(owner=owner, repository=repository, workflow=workflow)


def make_request(
    backend_kind: BackendKind = BackendKind.GITHUB,
    target: WorkflowTarget | None = None,
    ref: str = "main",
    inputs: dict[str, Any] | None = None,
    dispatched_at: datetime | None = None,
) -> TriggerRequest:
    return TriggerRequest(
        backend_kind=backend_kind,
        target=target or make_target(),
        ref=ref,
        inputs=inputs or {},
        dispatched_at=dispatched_at,
    )


def make_candidate(
    run_id: int,
    created_offset: float = 0.0,
    base: datetime = BASE_TIME,
    reference_url: str | None = None,
) -> CandidateRun:
    """Create a run created ``created_offset`` seconds after ``base``."""
    return CandidateRun(
        run_id=run_id,
        created_at=base + timedelta(seconds=created_offset),
        reference_url=reference_url or f"https://ci.example.com/runs/{run_id}",
        raw_status="queued",
    )


def make_poll_config(
    interval_seconds: float = 5.0,
    max_wait_seconds: float = 60.0,
    cancelled_is_failure: bool = False,
    clock_skew_allowance_seconds: float = 60.0,
    max_fetch_retries: int = 3,
    fetch_retry_delay_seconds: float = 1.0,
) -> PollConfig:
    return PollConfig(
        interval_seconds=interval_seconds,
        max_wait_seconds=max_wait_seconds,
        cancelled_is_failure=cancelled_is_failure,
        clock_skew_allowance_seconds=clock_skew_allowance_seconds,
        max_fetch_retries=max_fetch_retries,
        fetch_retry_delay_seconds=fetch_retry_delay_seconds,
    )


def make_config(
    kind: str = "github",
    owner: str = "acme",
    repository: str = "deploy-tools",
    workflow: str = "deploy.yml",
    ref: str = "main",
    inputs: dict[str, str] | None = None,
    auth_token: str = "test-token",
    auth_user: str = "",
    base_url: str = "",
    interval: int = 1,
    max_wait_minutes: int = 1,
    cancelled_is_failure: bool = False,
    rate_limit_enabled: bool = False,
) -> Config:
    """Create a Config for tests without touching the environment."""
    return Config(
        backend=BackendConfig(
            kind=kind,
            base_url=base_url,
            owner=owner,
            repository=repository,
            workflow=workflow,
            ref=ref,
            inputs=inputs or {},
            auth_token=auth_token,
            auth_user=auth_user,
        ),
        polling=PollingConfig(
            interval=interval,
            max_wait_minutes=max_wait_minutes,
            cancelled_is_failure=cancelled_is_failure,
        ),
        rate_limit=RateLimitConfig(enabled=rate_limit_enabled),
    )
