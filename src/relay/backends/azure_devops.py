"""Azure DevOps Pipelines backend adapter.

Uses the Pipelines Runs API:
https://learn.microsoft.com/en-us/rest/api/azure/devops/pipelines/runs

Unlike GitHub and Jenkins, starting a run returns the run id, which the
adapter hands back in ``DispatchAck.run_id`` so correlation pins it.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx

from relay.backends.base import HttpBackendAdapter, validate_inputs
from relay.circuit_breaker import CircuitBreaker
from relay.exceptions import DispatchError, TransientFetchError
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

DEFAULT_AZURE_DEVOPS_URL = "https://dev.azure.com"
API_VERSION = "7.1"

PENDING_STATES = frozenset({"unknown"})
RUNNING_STATES = frozenset({"inProgress", "canceling"})

RESULT_OUTCOMES: dict[str, RunOutcome] = {
    "succeeded": RunOutcome.SUCCESS,
    "failed": RunOutcome.FAILURE,
    "canceled": RunOutcome.CANCELLED,
    "unknown": RunOutcome.UNKNOWN,
}


def normalize_run_state(state: str | None, result: str | None) -> RunState:
    """Map an Azure DevOps run ``state``/``result`` pair to a RunState."""
    if state == "completed":
        return RunState.completed(RESULT_OUTCOMES.get(result or "", RunOutcome.UNKNOWN))
    if state in RUNNING_STATES:
        return RunState.running()
    if state not in PENDING_STATES:
        logger.warning("Unrecognized Azure DevOps run state '%s', treating as pending", state)
    return RunState.pending()


def qualify_ref(ref: str) -> str:
    """Turn a branch name into a full ref name (``main`` -> ``refs/heads/main``)."""
    if ref.startswith("refs/"):
        return ref
    return f"refs/heads/{ref}"


class AzureDevOpsAdapter(HttpBackendAdapter):
    """Adapter for Azure DevOps YAML pipelines.

    ``WorkflowTarget.owner`` is the organization, ``repository`` the project
    and ``workflow`` the numeric pipeline id.
    """

    kind = BackendKind.AZURE_DEVOPS

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
        """Initialize the Azure DevOps adapter.

        Args:
            token: Personal access token with Build (read & execute) scope.
            base_url: Optional server URL. Defaults to https://dev.azure.com;
                set it for Azure DevOps Server collections.
            timeout: Optional custom timeout configuration.
            limits: Connection pool limits.
            retry_config: Retry configuration for rate limiting.
            circuit_breaker: Circuit breaker instance for resilience.
            rate_limiter: Outgoing request budget.
            transport: Optional httpx transport for testing.
        """
        super().__init__(
            base_url=base_url or DEFAULT_AZURE_DEVOPS_URL,
            headers={"Accept": "application/json"},
            # PATs go in the password slot with an empty user name
            auth=("", token),
            timeout=timeout,
            limits=limits,
            retry_config=retry_config,
            circuit_breaker=circuit_breaker,
            rate_limiter=rate_limiter,
            transport=transport,
        )

    def _runs_url(self, target: WorkflowTarget) -> str:
        return (
            f"{self.base_url}/{quote(target.owner, safe='')}/{quote(target.repository, safe='')}"
            f"/_apis/pipelines/{quote(target.workflow, safe='')}/runs"
        )

    def dispatch(self, request: TriggerRequest) -> DispatchAck:
        payload: dict[str, Any] = {
            "resources": {"repositories": {"self": {"refName": qualify_ref(request.ref)}}},
            "templateParameters": validate_inputs(request.inputs, self.kind.value),
        }
        response = self._send(
            "POST",
            self._runs_url(request.target),
            for_dispatch=True,
            params={"api-version": API_VERSION},
            json=payload,
        )
        try:
            run_id = int(response.json()["id"])
        except (KeyError, TypeError, ValueError) as e:
            raise DispatchError(
                f"Azure DevOps accepted the run but returned no run id: {e}",
                backend=self.kind.value,
                status_code=response.status_code,
            ) from e
        logger.info("Started Azure DevOps pipeline %s as run %s", request.target, run_id)
        return DispatchAck(accepted_at=utc_now(), run_id=run_id)

    def list_candidate_runs(self, request: TriggerRequest) -> list[CandidateRun]:
        """List runs of the pipeline on the request's ref, newest first.

        Runs whose payload names a different source ref are dropped. The list
        is not truncated so the run id returned by ``dispatch`` stays
        visible even when many runs start at once.
        """
        response = self._send(
            "GET", self._runs_url(request.target), params={"api-version": API_VERSION}
        )
        data = self._json(response)
        wanted_ref = qualify_ref(request.ref)
        runs: list[CandidateRun] = []
        for item in data.get("value", []) if isinstance(data, dict) else []:
            run_ref = _source_ref(item)
            if run_ref is not None and run_ref != wanted_ref:
                continue
            run = _parse_candidate(item)
            if run is not None:
                runs.append(run)
        runs.sort(key=lambda run: (run.created_at, run.run_id), reverse=True)
        return runs

    def get_run_state(self, target: WorkflowTarget, run_id: int) -> RunState:
        url = f"{self._runs_url(target)}/{run_id}"
        data = self._json(self._send("GET", url, params={"api-version": API_VERSION}))
        if not isinstance(data, dict):
            raise TransientFetchError(
                f"Unexpected Azure DevOps run payload for run {run_id}",
                backend=self.kind.value,
            )
        return normalize_run_state(data.get("state"), data.get("result"))


def _parse_candidate(item: Any) -> CandidateRun | None:
    try:
        links = item.get("_links") or {}
        return CandidateRun(
            run_id=int(item["id"]),
            created_at=parse_timestamp(item["createdDate"]),
            reference_url=(links.get("web") or {}).get("href") or item.get("url", ""),
            raw_status=item.get("state") or "",
        )
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        logger.debug("Skipping malformed Azure DevOps run entry: %s", e)
        return None


def _source_ref(item: Any) -> str | None:
    """``resources.repositories.self.refName`` of a run, when the payload has it."""
    try:
        ref = item["resources"]["repositories"]["self"]["refName"]
    except (KeyError, TypeError):
        return None
    return ref if isinstance(ref, str) else None
