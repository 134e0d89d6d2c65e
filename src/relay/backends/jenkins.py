"""Jenkins backend adapter.

Builds are triggered through ``buildWithParameters`` (or ``build`` for jobs
without parameters). Jenkins answers with a queue item location, not a
build number, so the build is correlated from the job's recent builds.
The ref is passed as a build parameter, ``BRANCH`` by default.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx

from relay.backends.base import DEFAULT_LIST_LIMIT, HttpBackendAdapter, validate_inputs
from relay.circuit_breaker import CircuitBreaker
from relay.exceptions import TransientFetchError
from relay.http import RetryConfig
from relay.logging import get_logger
from relay.models import CandidateRun, DispatchAck, RunState, TriggerRequest, WorkflowTarget, utc_now
from relay.rate_limiter import RequestRateLimiter
from relay.types import BackendKind, RunOutcome

logger = get_logger(__name__)

DEFAULT_REF_PARAMETER = "BRANCH"

RESULT_OUTCOMES: dict[str, RunOutcome] = {
    "SUCCESS": RunOutcome.SUCCESS,
    "FAILURE": RunOutcome.FAILURE,
    "UNSTABLE": RunOutcome.FAILURE,
    "ABORTED": RunOutcome.CANCELLED,
    "NOT_BUILT": RunOutcome.NEUTRAL,
}

_BUILD_FIELDS = "number,timestamp,url,building,result,actions[parameters[name,value]]"


def normalize_build_state(building: bool, result: str | None) -> RunState:
    """Map a Jenkins build's ``building``/``result`` pair to a RunState."""
    if building:
        return RunState.running()
    if result is None:
        return RunState.pending()
    return RunState.completed(RESULT_OUTCOMES.get(result, RunOutcome.UNKNOWN))


def job_path(target: WorkflowTarget) -> str:
    """Build the ``job/<name>`` path for a job, nesting through folders.

    ``owner`` holds an optional folder path and ``workflow`` the job name;
    either may contain ``/`` separated folder segments.
    """
    segments = [
        segment
        for part in (target.owner, target.workflow)
        for segment in part.split("/")
        if segment
    ]
    return "/".join(f"job/{quote(segment, safe='')}" for segment in segments)


class JenkinsAdapter(HttpBackendAdapter):
    """Adapter for parameterized Jenkins jobs."""

    kind = BackendKind.JENKINS

    def __init__(
        self,
        base_url: str,
        user: str,
        token: str,
        ref_parameter: str = DEFAULT_REF_PARAMETER,
        timeout: httpx.Timeout | None = None,
        limits: httpx.Limits | None = None,
        retry_config: RetryConfig | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        rate_limiter: RequestRateLimiter | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the Jenkins adapter.

        Args:
            base_url: Jenkins root URL, e.g. https://jenkins.example.com.
            user: Jenkins user name.
            token: API token of that user.
            ref_parameter: Build parameter that receives the ref. Empty to
                not send the ref at all.
            timeout: Optional custom timeout configuration.
            limits: Connection pool limits.
            retry_config: Retry configuration for rate limiting.
            circuit_breaker: Circuit breaker instance for resilience.
            rate_limiter: Outgoing request budget.
            transport: Optional httpx transport for testing.
        """
        super().__init__(
            base_url=base_url,
            headers={"Accept": "application/json"},
            auth=(user, token),
            timeout=timeout,
            limits=limits,
            retry_config=retry_config,
            circuit_breaker=circuit_breaker,
            rate_limiter=rate_limiter,
            transport=transport,
        )
        self.ref_parameter = ref_parameter

    def _job_url(self, target: WorkflowTarget) -> str:
        return f"{self.base_url}/{job_path(target)}"

    def dispatch(self, request: TriggerRequest) -> DispatchAck:
        params: dict[str, str] = {
            key: ("true" if value else "false") if isinstance(value, bool) else str(value)
            for key, value in validate_inputs(request.inputs, self.kind.value).items()
        }
        if self.ref_parameter:
            params[self.ref_parameter] = request.ref

        if params:
            url = f"{self._job_url(request.target)}/buildWithParameters"
            response = self._send("POST", url, for_dispatch=True, data=params)
        else:
            url = f"{self._job_url(request.target)}/build"
            response = self._send("POST", url, for_dispatch=True)

        queue_url = response.headers.get("Location")
        logger.info("Queued Jenkins job %s (%s)", request.target, queue_url or "no queue item")
        return DispatchAck(accepted_at=utc_now(), queue_url=queue_url)

    def list_candidate_runs(self, request: TriggerRequest) -> list[CandidateRun]:
        url = f"{self._job_url(request.target)}/api/json"
        params = {"tree": f"builds[{_BUILD_FIELDS}]{{0,{DEFAULT_LIST_LIMIT}}}"}
        data = self._json(self._send("GET", url, params=params))
        runs: list[CandidateRun] = []
        for build in data.get("builds", []) if isinstance(data, dict) else []:
            if not self._matches_ref(build, request.ref):
                continue
            run = _parse_candidate(build)
            if run is not None:
                runs.append(run)
        runs.sort(key=lambda run: (run.created_at, run.run_id), reverse=True)
        logger.debug(
            "Jenkins listed %d builds for %s",
            len(runs),
            request.target,
            extra={"diagnostic_tag": "polling"},
        )
        return runs

    def get_run_state(self, target: WorkflowTarget, run_id: int) -> RunState:
        url = f"{self._job_url(target)}/{run_id}/api/json"
        data = self._json(self._send("GET", url, params={"tree": "number,building,result"}))
        if not isinstance(data, dict):
            raise TransientFetchError(
                f"Unexpected Jenkins build payload for build {run_id}", backend=self.kind.value
            )
        return normalize_build_state(bool(data.get("building")), data.get("result"))

    def _matches_ref(self, build: Any, ref: str) -> bool:
        """Check the build's ref parameter, keeping builds that don't report one."""
        if not self.ref_parameter or not isinstance(build, dict):
            return True
        for action in build.get("actions") or []:
            if not isinstance(action, dict):
                continue
            for parameter in action.get("parameters") or []:
                if parameter.get("name") == self.ref_parameter:
                    return parameter.get("value") == ref
        return True


def _parse_candidate(build: Any) -> CandidateRun | None:
    try:
        building = bool(build.get("building"))
        return CandidateRun(
            run_id=int(build["number"]),
            created_at=datetime.fromtimestamp(int(build["timestamp"]) / 1000, tz=UTC),
            reference_url=build.get("url", ""),
            raw_status="building" if building else (build.get("result") or "queued"),
        )
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        logger.debug("Skipping malformed Jenkins build entry: %s", e)
        return None
