"""Configuration loading from environment variables."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from relay.circuit_breaker import CircuitBreakerConfig
from relay.exceptions import ConfigurationError
from relay.types import VALID_BACKEND_KINDS, VALID_RATE_LIMIT_STRATEGIES, BackendKind

# Valid log levels
VALID_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

DEFAULT_POLL_INTERVAL = 15
DEFAULT_MAX_WAIT_MINUTES = 60
DEFAULT_JENKINS_REF_PARAMETER = "BRANCH"

# Key prefixes accepted by Config.with_overrides(), mapped to Config fields
_OVERRIDE_SECTIONS = (
    ("backend_", "backend"),
    ("polling_", "polling"),
    ("http_", "http"),
    ("rate_limit_", "rate_limit"),
    ("circuit_breaker_", "circuit_breaker"),
    ("logging_", "logging_config"),
)


@dataclass(frozen=True)
class BackendConfig:
    """Which backend to talk to and which workflow to run.

    Attributes:
        kind: Backend kind ("github", "jenkins", "azure_devops"). Empty if unset.
        base_url: API base URL. Empty means the backend's public default
            (required for Jenkins).
        owner: GitHub owner, Azure DevOps organization, or Jenkins folder path.
        repository: GitHub repository or Azure DevOps project.
        workflow: Workflow file/id, Jenkins job name, or pipeline id.
        ref: Branch or tag to run against.
        inputs: Workflow input parameters.
        auth_token: API token. Never logged.
        auth_user: User name for Jenkins basic auth.
        jenkins_ref_parameter: Build parameter that carries the ref on Jenkins.
    """

    kind: str = ""
    base_url: str = ""
    owner: str = ""
    repository: str = ""
    workflow: str = ""
    ref: str = "main"
    inputs: dict[str, str] = field(default_factory=dict)
    auth_token: str = field(default="", repr=False)
    auth_user: str = ""
    jenkins_ref_parameter: str = DEFAULT_JENKINS_REF_PARAMETER


@dataclass(frozen=True)
class PollingConfig:
    """Poll timing configuration.

    Attributes:
        interval: Seconds between polls.
        max_wait_minutes: Overall deadline in minutes.
        cancelled_is_failure: Treat backend cancellation as a failure.
        clock_skew_allowance: Seconds of clock drift tolerated by correlation.
        max_fetch_retries: In-place retries for transient errors per tick.
        fetch_retry_delay: Seconds between in-place retries.
    """

    interval: int = DEFAULT_POLL_INTERVAL
    max_wait_minutes: int = DEFAULT_MAX_WAIT_MINUTES
    cancelled_is_failure: bool = False
    clock_skew_allowance: float = 60.0
    max_fetch_retries: int = 3
    fetch_retry_delay: float = 1.0


@dataclass(frozen=True)
class HttpConfig:
    """HTTP transport configuration.

    Attributes:
        connect_timeout: Seconds to wait for a connection.
        read_timeout: Seconds to wait for a response.
        max_connections: Connection-level concurrency cap per backend client.
        max_rate_limit_retries: Retries on 403/429 rate limit responses.
    """

    connect_timeout: float = 10.0
    read_timeout: float = 30.0
    max_connections: int = 10
    max_rate_limit_retries: int = 4


@dataclass(frozen=True)
class RateLimitConfig:
    """Outgoing request budget per backend client.

    Attributes:
        enabled: Whether request budgeting is enabled.
        per_minute: Maximum requests per minute.
        per_hour: Maximum requests per hour.
        strategy: "queue" (wait for a permit) or "reject" (fail immediately).
        warning_threshold: Remaining-capacity fraction that triggers warnings.
        acquire_timeout: Seconds to wait for a permit with the queue strategy.
    """

    enabled: bool = True
    per_minute: int = 60
    per_hour: int = 1000
    strategy: str = "queue"
    warning_threshold: float = 0.2
    acquire_timeout: float = 30.0


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    json: bool = False
    diagnostic_tags: str = ""


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment.

    This dataclass is frozen (immutable) to prevent accidental modification
    after creation. Use with_overrides() to derive a modified copy.
    """

    backend: BackendConfig = field(default_factory=BackendConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    logging_config: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def backend_kind(self) -> BackendKind | None:
        """The configured backend kind, or None if unset."""
        if BackendKind.is_valid(self.backend.kind):
            return BackendKind(self.backend.kind)
        return None

    def with_overrides(self, **overrides: Any) -> Config:
        """Return a copy with sub-config fields replaced.

        Keys are ``<section>_<field>`` (e.g. ``backend_ref``,
        ``polling_interval``). ``None`` values are ignored so CLI
        arguments that were not given leave the loaded values alone.

        Raises:
            ValueError: If a key does not name a known section field.
        """
        sections: dict[str, dict[str, Any]] = {}
        for key, value in overrides.items():
            if value is None:
                continue
            for prefix, section in _OVERRIDE_SECTIONS:
                if key.startswith(prefix):
                    name = key.removeprefix(prefix)
                    break
            else:
                raise ValueError(f"Unknown configuration override: {key}")
            if not hasattr(getattr(self, section), name):
                raise ValueError(f"Unknown configuration override: {key}")
            sections.setdefault(section, {})[name] = value

        config = self
        for section, values in sections.items():
            config = replace(config, **{section: replace(getattr(config, section), **values)})
        return config

    def validate_for_run(self) -> None:
        """Check that everything needed to trigger a workflow is present.

        Raises:
            ConfigurationError: Describing every missing or invalid value.
        """
        problems: list[str] = []
        kind = self.backend_kind
        if kind is None:
            problems.append(
                f"backend must be one of {', '.join(sorted(VALID_BACKEND_KINDS))} "
                "(RELAY_BACKEND or --backend)"
            )
        if not self.backend.workflow:
            problems.append("workflow is required (RELAY_WORKFLOW or --workflow)")
        if not self.backend.ref:
            problems.append("ref is required (RELAY_REF or --ref)")
        if not self.backend.auth_token:
            problems.append("RELAY_AUTH_TOKEN is required")
        if kind == BackendKind.GITHUB and not (self.backend.owner and self.backend.repository):
            problems.append("GitHub requires owner and repository")
        if kind == BackendKind.AZURE_DEVOPS and not (
            self.backend.owner and self.backend.repository
        ):
            problems.append("Azure DevOps requires owner (organization) and repository (project)")
        if kind == BackendKind.AZURE_DEVOPS and not self.backend.workflow.isdigit():
            problems.append("Azure DevOps workflow must be a numeric pipeline id")
        if kind == BackendKind.JENKINS:
            if not self.backend.base_url:
                problems.append("Jenkins requires a base URL (RELAY_BASE_URL or --base-url)")
            if not self.backend.auth_user:
                problems.append("Jenkins requires RELAY_AUTH_USER")
        if self.polling.max_wait_minutes * 60 <= self.polling.interval:
            problems.append("max wait must be longer than the poll interval")
        if problems:
            raise ConfigurationError("Invalid configuration: " + "; ".join(problems))


def _parse_number(
    value: str,
    name: str,
    default: Any,
    convert: Callable[[str], Any],
    check: Callable[[Any], bool],
    requirement: str,
) -> Any:
    """Convert and check one numeric setting.

    Invalid values log a warning and give back ``default``.
    """
    try:
        parsed = convert(value)
    except ValueError:
        kind = "integer" if convert is int else "number"
        logging.warning(
            "Invalid %s: '%s' is not a valid %s, using default %s", name, value, kind, default
        )
        return default
    if not check(parsed):
        logging.warning("Invalid %s: %s is %s, using default %s", name, parsed, requirement, default)
        return default
    return parsed


def _parse_positive_int(value: str, name: str, default: int) -> int:
    return _parse_number(value, name, default, int, lambda n: n > 0, "not positive")


def _parse_non_negative_int(value: str, name: str, default: int) -> int:
    return _parse_number(value, name, default, int, lambda n: n >= 0, "negative")


def _parse_non_negative_float(value: str, name: str, default: float) -> float:
    return _parse_number(value, name, default, float, lambda n: n >= 0, "negative")


def _parse_warning_threshold(value: str, name: str, default: float) -> float:
    """A fraction of capacity, 0.0 to 1.0 inclusive."""
    return _parse_number(
        value, name, default, float, lambda n: 0.0 <= n <= 1.0, "not in range 0.0-1.0"
    )


def _env_number(parser: Callable[[str, str, Any], Any], name: str, default: Any) -> Any:
    """Read ``name`` from the environment and run it through ``parser``."""
    return parser(os.getenv(name, str(default)), name, default)


def _parse_bool(value: str) -> bool:
    """Parse a string as a boolean.

    Returns:
        True if value is "true", "1", or "yes" (case-insensitive), False otherwise.
    """
    return value.lower() in ("true", "1", "yes")


def _validate_log_level(value: str, default: str = "INFO") -> str:
    """Validate and normalize a log level string.

    Returns:
        The validated log level (uppercase), or the default if invalid.
    """
    normalized = value.upper()
    if normalized not in VALID_LOG_LEVELS:
        logging.warning(
            "Invalid RELAY_LOG_LEVEL: '%s' is not valid, using default '%s'. Valid values: %s",
            value,
            default,
            ", ".join(sorted(VALID_LOG_LEVELS)),
        )
        return default
    return normalized


def _validate_backend_kind(value: str) -> str:
    """Validate and normalize a backend kind string.

    Unlike numeric settings there is no safe default backend, so an invalid
    value is logged and left unset for validate_for_run() to report.

    Returns:
        The normalized backend kind, or "" if empty or invalid.
    """
    normalized = value.strip().lower().replace("-", "_")
    if not normalized:
        return ""
    if normalized not in VALID_BACKEND_KINDS:
        logging.warning(
            "Invalid RELAY_BACKEND: '%s' is not valid. Valid values: %s",
            value,
            ", ".join(sorted(VALID_BACKEND_KINDS)),
        )
        return ""
    return normalized


def _validate_rate_limit_strategy(value: str, default: str = "queue") -> str:
    """Validate and normalize a rate limit strategy string."""
    normalized = value.lower()
    if normalized not in VALID_RATE_LIMIT_STRATEGIES:
        logging.warning(
            "Invalid RELAY_RATE_LIMIT_STRATEGY: '%s' is not valid, using default '%s'. "
            "Valid values: %s",
            value,
            default,
            ", ".join(sorted(VALID_RATE_LIMIT_STRATEGIES)),
        )
        return default
    return normalized


def _parse_inputs(value: str) -> dict[str, str]:
    """Parse workflow inputs from a JSON object string.

    Unlike the numeric settings, malformed input raises rather than
    falling back to a default.

    Args:
        value: JSON object mapping input names to scalar values.

    Returns:
        Mapping of input names to string values.

    Raises:
        ConfigurationError: If the value is not a JSON object of scalars.
    """
    if not value.strip():
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"RELAY_INPUTS is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError("RELAY_INPUTS must be a JSON object")
    inputs: dict[str, str] = {}
    for key, item in data.items():
        if isinstance(item, (dict, list)) or item is None:
            raise ConfigurationError(f"RELAY_INPUTS value for '{key}' must be a scalar")
        if isinstance(item, bool):
            inputs[key] = "true" if item else "false"
        else:
            inputs[key] = str(item)
    return inputs


def parse_input_pairs(pairs: list[str]) -> dict[str, str]:
    """Parse ``KEY=VALUE`` strings from the command line.

    Raises:
        ConfigurationError: If a pair has no ``=`` or an empty key.
    """
    inputs: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ConfigurationError(f"Invalid input '{pair}': expected KEY=VALUE")
        inputs[key] = value
    return inputs


def load_config(env_file: Path | None = None) -> Config:
    """Load configuration from environment variables.

    Args:
        env_file: Optional path to .env file. If not provided,
                  looks for .env in current directory.

    Returns:
        Config object with loaded values.

    Numeric values are validated and defaults are used for invalid inputs.

    Raises:
        ConfigurationError: If RELAY_INPUTS is malformed.
    """
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    kind = _validate_backend_kind(os.getenv("RELAY_BACKEND", ""))

    backend = BackendConfig(
        kind=kind,
        base_url=os.getenv("RELAY_BASE_URL", "").rstrip("/"),
        owner=os.getenv("RELAY_OWNER", ""),
        repository=os.getenv("RELAY_REPOSITORY", ""),
        workflow=os.getenv("RELAY_WORKFLOW", ""),
        ref=os.getenv("RELAY_REF", "main"),
        inputs=_parse_inputs(os.getenv("RELAY_INPUTS", "")),
        auth_token=os.getenv("RELAY_AUTH_TOKEN", ""),
        auth_user=os.getenv("RELAY_AUTH_USER", ""),
        jenkins_ref_parameter=os.getenv(
            "RELAY_JENKINS_REF_PARAMETER", DEFAULT_JENKINS_REF_PARAMETER
        ),
    )

    polling = PollingConfig(
        interval=_env_number(_parse_positive_int, "RELAY_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
        max_wait_minutes=_env_number(
            _parse_positive_int, "RELAY_MAX_WAIT_MINUTES", DEFAULT_MAX_WAIT_MINUTES
        ),
        cancelled_is_failure=_parse_bool(os.getenv("RELAY_CANCELLED_IS_FAILURE", "")),
        clock_skew_allowance=_env_number(
            _parse_non_negative_float, "RELAY_CLOCK_SKEW_ALLOWANCE", 60.0
        ),
        max_fetch_retries=_env_number(_parse_non_negative_int, "RELAY_MAX_FETCH_RETRIES", 3),
        fetch_retry_delay=_env_number(_parse_non_negative_float, "RELAY_FETCH_RETRY_DELAY", 1.0),
    )

    http = HttpConfig(
        connect_timeout=_env_number(_parse_non_negative_float, "RELAY_HTTP_CONNECT_TIMEOUT", 10.0),
        read_timeout=_env_number(_parse_non_negative_float, "RELAY_HTTP_READ_TIMEOUT", 30.0),
        max_connections=_env_number(_parse_positive_int, "RELAY_HTTP_MAX_CONNECTIONS", 10),
        max_rate_limit_retries=_env_number(
            _parse_non_negative_int, "RELAY_HTTP_MAX_RATE_LIMIT_RETRIES", 4
        ),
    )

    rate_limit = RateLimitConfig(
        enabled=_parse_bool(os.getenv("RELAY_RATE_LIMIT_ENABLED", "true")),
        per_minute=_env_number(_parse_positive_int, "RELAY_RATE_LIMIT_PER_MINUTE", 60),
        per_hour=_env_number(_parse_positive_int, "RELAY_RATE_LIMIT_PER_HOUR", 1000),
        strategy=_validate_rate_limit_strategy(os.getenv("RELAY_RATE_LIMIT_STRATEGY", "queue")),
        warning_threshold=_env_number(
            _parse_warning_threshold, "RELAY_RATE_LIMIT_WARNING_THRESHOLD", 0.2
        ),
        acquire_timeout=_env_number(
            _parse_non_negative_float, "RELAY_RATE_LIMIT_ACQUIRE_TIMEOUT", 30.0
        ),
    )

    logging_config = LoggingConfig(
        level=_validate_log_level(os.getenv("RELAY_LOG_LEVEL", "INFO")),
        json=_parse_bool(os.getenv("RELAY_LOG_JSON", "")),
        diagnostic_tags=os.getenv("RELAY_DIAGNOSTIC_TAGS", ""),
    )

    return Config(
        backend=backend,
        polling=polling,
        http=http,
        rate_limit=rate_limit,
        circuit_breaker=CircuitBreakerConfig.from_env(kind),
        logging_config=logging_config,
    )
