"""Application runner for the ``relay`` command.

Coordinates configuration loading, logging setup, adapter creation,
signal handling and a single orchestration, and maps the outcome to an
exit code. Logs go to stderr; the run URL and final result go to stdout.
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import TextIO

import httpx

from relay.backends.factory import create_adapter
from relay.clock import CancellationToken, Clock
from relay.cli import parse_args
from relay.config import Config, load_config, parse_input_pairs
from relay.exceptions import ConfigurationError, OrchestrationError, PollConfigError
from relay.logging import get_logger, setup_logging
from relay.models import OrchestrationResult, PollConfig, TriggerRequest, WorkflowTarget
from relay.orchestrator import Orchestrator
from relay.shutdown import ShutdownHandler
from relay.types import BackendKind, VerdictKind

logger = get_logger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_TIMED_OUT = 2
EXIT_ORCHESTRATION_ERROR = 3
EXIT_CONFIG_ERROR = 4
EXIT_ABORTED = 130

_VERDICT_EXIT_CODES: dict[VerdictKind, int] = {
    VerdictKind.SUCCEEDED: EXIT_SUCCESS,
    VerdictKind.CANCELLED: EXIT_SUCCESS,
    VerdictKind.FAILED: EXIT_FAILED,
    VerdictKind.TIMED_OUT: EXIT_TIMED_OUT,
    VerdictKind.ABORTED: EXIT_ABORTED,
}


def exit_code_for(result: OrchestrationResult) -> int:
    """Map an orchestration result to the process exit code."""
    return _VERDICT_EXIT_CODES[result.verdict.kind]


def build_config(parsed: argparse.Namespace) -> Config:
    """Load configuration and apply command-line overrides.

    ``--input`` pairs are merged over ``RELAY_INPUTS``.

    Raises:
        ConfigurationError: If the environment or the arguments are malformed.
    """
    config = load_config(parsed.env_file)
    inputs = None
    if parsed.inputs:
        inputs = {**config.backend.inputs, **parse_input_pairs(parsed.inputs)}
    return config.with_overrides(
        backend_kind=parsed.backend,
        backend_owner=parsed.owner,
        backend_repository=parsed.repository,
        backend_workflow=parsed.workflow,
        backend_ref=parsed.ref,
        backend_inputs=inputs,
        backend_base_url=parsed.base_url.rstrip("/") if parsed.base_url else None,
        backend_auth_user=parsed.auth_user,
        polling_interval=parsed.interval,
        polling_max_wait_minutes=parsed.max_wait,
        polling_cancelled_is_failure=parsed.cancelled_is_failure,
        logging_level=parsed.log_level,
    )


def build_request(config: Config) -> TriggerRequest:
    """Build the trigger request described by a validated configuration."""
    backend = config.backend
    return TriggerRequest(
        backend_kind=BackendKind(backend.kind),
        target=WorkflowTarget(
            owner=backend.owner,
            repository=backend.repository,
            workflow=backend.workflow,
        ),
        ref=backend.ref,
        inputs=backend.inputs,
    )


def print_result(
    result: OrchestrationResult, json_output: bool, stream: TextIO | None = None
) -> None:
    """Print the final result as one human-readable line or as JSON."""
    out = stream or sys.stdout
    if json_output:
        print(json.dumps(result.to_dict()), file=out, flush=True)
        return
    line = f"Verdict: {result.verdict.kind.value.upper()}"
    if result.verdict.reason:
        line += f" ({result.verdict.reason})"
    print(line, file=out, flush=True)


def print_error(error: OrchestrationError, json_output: bool) -> None:
    """Report an orchestration error on stdout (JSON) or stderr (text)."""
    if json_output:
        payload = {
            "verdict": "error",
            "reason": str(error),
            "reference_url": error.reference_url,
            "run_id": None,
        }
        print(json.dumps(payload), flush=True)
        return
    print(f"Error: {error}", file=sys.stderr, flush=True)


def run_orchestration(
    config: Config,
    json_output: bool = False,
    cancel_token: CancellationToken | None = None,
    clock: Clock | None = None,
    transport: httpx.BaseTransport | None = None,
) -> int:
    """Run one orchestration for a validated configuration.

    Args:
        config: Validated configuration.
        json_output: Print the result as JSON.
        cancel_token: Token that aborts the orchestration.
        clock: Time source, for tests.
        transport: Optional httpx transport, for tests.

    Returns:
        Exit code for the process.
    """
    poll_config = PollConfig.from_config(config)
    request = build_request(config)

    # Keep stdout a single JSON document in JSON mode
    url_stream = sys.stderr if json_output else sys.stdout

    def publish_url(url: str) -> None:
        print(f"Run URL: {url}", file=url_stream, flush=True)

    with create_adapter(config, transport=transport) as adapter:
        orchestrator = Orchestrator(adapter, clock=clock)
        try:
            result = orchestrator.run_and_await(
                request,
                poll_config,
                on_reference_url=publish_url,
                cancel_token=cancel_token,
            )
        except OrchestrationError as e:
            logger.error("Orchestration failed: %s", e)
            print_error(e, json_output)
            return EXIT_ORCHESTRATION_ERROR

    print_result(result, json_output)
    return exit_code_for(result)


def main(args: list[str] | None = None) -> int:
    """Main entry point for the ``relay`` command.

    1. Parses command-line arguments
    2. Loads and validates configuration
    3. Installs signal handlers
    4. Runs the orchestration

    Args:
        args: Optional list of command-line arguments.

    Returns:
        Exit code for the application.
    """
    parsed = parse_args(args)

    try:
        config = build_config(parsed)
        config.validate_for_run()
        # Surfaces interval/deadline problems before anything is dispatched
        PollConfig.from_config(config)
    except (ConfigurationError, PollConfigError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr, flush=True)
        return EXIT_CONFIG_ERROR

    setup_logging(
        level=config.logging_config.level,
        json_format=config.logging_config.json,
        diagnostic_tags=config.logging_config.diagnostic_tags,
    )
    logger.info(
        "Relaying %s workflow %s on %s",
        config.backend.kind,
        config.backend.workflow,
        config.backend.ref,
    )

    token = CancellationToken()
    shutdown = ShutdownHandler(token)
    shutdown.install_signal_handlers()
    try:
        return run_orchestration(config, json_output=parsed.json, cancel_token=token)
    finally:
        shutdown.restore_signal_handlers()


__all__ = [
    "build_config",
    "build_request",
    "exit_code_for",
    "main",
    "print_result",
    "run_orchestration",
]
