"""Command-line interface argument parsing for workflow relay.

Every option falls back to its ``RELAY_*`` environment variable (or
``.env`` entry) when not given. The auth token has no flag and is only read
from the environment.
"""

from __future__ import annotations

import argparse
from pathlib import Path

from relay.types import BackendKind


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """Parse ``relay`` arguments, or ``sys.argv`` when ``args`` is None.

    Options that were not given come back as None so the loaded
    configuration keeps its value.
    """
    parser = argparse.ArgumentParser(
        prog="relay",
        description="Trigger a CI workflow and wait for its verdict",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "exit codes:\n"
            "  0    succeeded (or cancelled, unless --cancelled-is-failure)\n"
            "  1    failed\n"
            "  2    timed out\n"
            "  3    orchestration error (dispatch rejected, run not found)\n"
            "  4    configuration error\n"
            "  130  aborted by signal\n"
        ),
    )

    target = parser.add_argument_group("workflow")
    target.add_argument(
        "--backend",
        choices=sorted(BackendKind.values()),
        default=None,
        help="CI backend (overrides RELAY_BACKEND)",
    )
    target.add_argument(
        "--owner",
        default=None,
        help="GitHub owner, Azure DevOps organization or Jenkins folder (overrides RELAY_OWNER)",
    )
    target.add_argument(
        "--repository",
        default=None,
        help="GitHub repository or Azure DevOps project (overrides RELAY_REPOSITORY)",
    )
    target.add_argument(
        "--workflow",
        default=None,
        help="Workflow file/id, Jenkins job or pipeline id (overrides RELAY_WORKFLOW)",
    )
    target.add_argument(
        "--ref",
        default=None,
        help="Branch or tag to run against (overrides RELAY_REF)",
    )
    target.add_argument(
        "--input",
        dest="inputs",
        action="append",
        default=None,
        metavar="KEY=VALUE",
        help="Workflow input, may be repeated (merged over RELAY_INPUTS)",
    )

    connection = parser.add_argument_group("connection")
    connection.add_argument(
        "--base-url",
        default=None,
        help="API base URL, required for Jenkins (overrides RELAY_BASE_URL)",
    )
    connection.add_argument(
        "--auth-user",
        default=None,
        help="User name for Jenkins basic auth (overrides RELAY_AUTH_USER)",
    )

    polling = parser.add_argument_group("polling")
    polling.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Poll interval in seconds (overrides RELAY_POLL_INTERVAL)",
    )
    polling.add_argument(
        "--max-wait",
        type=int,
        default=None,
        help="Overall deadline in minutes (overrides RELAY_MAX_WAIT_MINUTES)",
    )
    polling.add_argument(
        "--cancelled-is-failure",
        action="store_true",
        default=None,
        help="Treat a cancelled run as a failure (overrides RELAY_CANCELLED_IS_FAILURE)",
    )

    output = parser.add_argument_group("output")
    output.add_argument(
        "--json",
        action="store_true",
        help="Print the final result as JSON",
    )
    output.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level (overrides RELAY_LOG_LEVEL)",
    )
    output.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to .env file (default: ./.env)",
    )

    return parser.parse_args(args)


__all__ = ["parse_args"]
