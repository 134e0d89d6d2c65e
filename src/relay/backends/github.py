"""GitHub Actions backend adapter.

Uses the REST API ``workflow_dispatch`` endpoint, which answers 204 with no
body, so the run is located afterwards by listing the workflow's
dispatch-triggered runs on the ref:
https://docs.github.com/en/rest/actions/workflows#create-a-workflow-dispatch-event
"""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx

from relay.backends.base import DEFAULT_LIST_LIMIT, HttpBackendAdapter, validate_inputs
from relay.circuit_breaker import CircuitBreaker
from relay.exceptions import RunNotFound, TransientFetchError
from relay.http import RetryConfig
from relay.logging import get_logger
from relay.models import (
    CandidateRun,
    DispatchAck,
    RunState,
    TriggerRequest,
    WorkflowTarget,
    parse_timestamp,
    utc_now,
)
from relay.rate_limiter import RequestRateLimiter
from relay.types import BackendKind, RunOutcome

logger = get_logger(__name__)

DEFAULT_GITHUB_API_URL = "https://api.github.com"

PENDING_STATUSES = frozenset({"queued", "requested", "waiting", "pending"})
RUNNING_STATUSES = frozenset({"in_progress"})

CONCLUSION_OUTCOMES: dict[str, RunOutcome] = {
    "success": RunOutcome.SUCCESS,
    "failure": RunOutcome.FAILURE,
    "timed_out": RunOutcome.FAILURE,
    "startup_failure": RunOutcome.FAILURE,
    "action_required": RunOutcome.FAILURE,
    "cancelled": RunOutcome.CANCELLED,
    "neutral": RunOutcome.NEUTRAL,
    "skipped": RunOutcome.NEUTRAL,
}


def normalize_run_state(status: str | None, conclusion: str | None) -> RunState:
    """Map GitHub's ``status``/``conclusion`` pair to a RunState."""
    if status == "completed":
        return RunState.completed(CONCLUSION_OUTCOMES.get(conclusion or "", RunOutcome.UNKNOWN))
    if status in RUNNING_STATUSES:
        return RunState.running()
    if status not in PENDING_STATUSES:
        logger.warning("Unrecognized GitHub run status '%s', treating as pending", status)
    return RunState.pending()


class GitHubActionsAdapter(HttpBackendAdapter):
    """Adapter for GitHub Actions ``workflow_dispatch`` workflows.

    ``WorkflowTarget.workflow`` is the workflow file name (``deploy.yml``) or
    its numeric id. Supports GitHub Enterprise through ``base_url``
    (``https://ghe.example.com/api/v3``).
    """

    kind = BackendKind.GITHUB

    def __init__(
        self,
        token: str,
        base_url: str | None = None,
        timeout: httpx.Timeout | None = None,
        limits: httpx.Limits | None = None,
        retry_config: RetryConfig | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        rate_limiter: RequestRateLimiter | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the GitHub Actions adapter.

        Args:
            token: GitHub personal access token or app token with
                ``actions:write`` permission.
            base_url: Optional API base URL. Defaults to https://api.github.com.
            timeout: Optional custom timeout configuration.
            limits: Connection pool limits.
            retry_config: Retry configuration for rate limiting.
            circuit_breaker: Circuit breaker instance for resilience.
            rate_limiter: Outgoing request budget.
            transport: Optional httpx transport for testing.
        """
        super().__init__(
            base_url=base_url or DEFAULT_GITHUB_API_URL,
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {token}",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout=timeout,
            limits=limits,
            retry_config=retry_config,
            circuit_breaker=circuit_breaker,
            rate_limiter=rate_limiter,
            transport=transport,
        )

    def _repo_url(self, target: WorkflowTarget) -> str:
        return f"{self.base_url}/repos/{quote(target.owner, safe='')}/{quote(target.repository, safe='')}"

    def _workflow_url(self, target: WorkflowTarget) -> str:
        return f"{self._repo_url(target)}/actions/workflows/{quote(target.workflow, safe='')}"

    def dispatch(self, request: TriggerRequest) -> DispatchAck:
        inputs = validate_inputs(request.inputs, self.kind.value)
        # workflow_dispatch inputs are always strings on the wire
        payload: dict[str, Any] = {
            "ref": request.ref,
            "inputs": {key: _to_input_string(value) for key, value in inputs.items()},
        }
        url = f"{self._workflow_url(request.target)}/dispatches"
        logger.info("Dispatching GitHub workflow %s on %s", request.target, request.ref)
        self._send("POST", url, for_dispatch=True, json=payload)
        return DispatchAck(accepted_at=utc_now())

    def list_candidate_runs(self, request: TriggerRequest) -> list[CandidateRun]:
        params: dict[str, str | int] = {
            "branch": request.ref,
            "event": "workflow_dispatch",
            "per_page": DEFAULT_LIST_LIMIT,
        }
        response = self._send("GET", f"{self._workflow_url(request.target)}/runs", params=params)
        data = self._json(response)
        runs: list[CandidateRun] = []
        for item in data.get("workflow_runs", []) if isinstance(data, dict) else []:
            run = _parse_candidate(item)
            if run is not None:
                runs.append(run)
        runs.sort(key=lambda run: (run.created_at, run.run_id), reverse=True)
        logger.debug(
            "GitHub listed %d dispatch runs for %s",
            len(runs),
            request.target,
            extra={"diagnostic_tag": "polling"},
        )
        return runs

    def get_run_state(self, target: WorkflowTarget, run_id: int) -> RunState:
        url = f"{self._repo_url(target)}/actions/runs/{run_id}"
        data = self._json(self._send("GET", url))
        if not isinstance(data, dict):
            raise TransientFetchError(
                f"Unexpected GitHub run payload for run {run_id}", backend=self.kind.value
            )
        if data.get("id") not in (None, run_id):
            raise RunNotFound(
                f"GitHub returned run {data.get('id')} for requested run {run_id}",
                backend=self.kind.value,
            )
        return normalize_run_state(data.get("status"), data.get("conclusion"))


def _to_input_string(value: str | int | float | bool) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _parse_candidate(item: Any) -> CandidateRun | None:
    try:
        return CandidateRun(
            run_id=int(item["id"]),
            created_at=parse_timestamp(item["created_at"]),
            reference_url=item.get("html_url", ""),
            raw_status=item.get("status") or "",
        )
    except (KeyError, TypeError, ValueError) as e:
        logger.debug("Skipping malformed GitHub run entry: %s", e)
        return None
