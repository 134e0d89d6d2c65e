"""Workflow Relay - trigger a CI workflow and await its verdict."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("workflow-relay")
except PackageNotFoundError:
    # Package is not installed (e.g., running from source without pip install)
    __version__ = "0.0.0.dev0"

# Re-export core public API
from relay.app import main
from relay.clock import CancellationToken
from relay.exceptions import (
    DispatchError,
    OrchestrationError,
    RunNotFound,
    TransientFetchError,
)
from relay.models import (
    OrchestrationResult,
    PollConfig,
    TriggerRequest,
    Verdict,
    WorkflowTarget,
)
from relay.orchestrator import Orchestrator
from relay.types import BackendKind, VerdictKind

# NOTE: Update this list when adding new exports to this module.
__all__ = [
    "__version__",
    "BackendKind",
    "CancellationToken",
    "DispatchError",
    "OrchestrationError",
    "OrchestrationResult",
    "Orchestrator",
    "PollConfig",
    "RunNotFound",
    "TransientFetchError",
    "TriggerRequest",
    "Verdict",
    "VerdictKind",
    "WorkflowTarget",
    "main",
]
