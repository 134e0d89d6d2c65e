"""Factory for building backend adapters from configuration.

Each backend kind has a registered builder. Builders receive the loaded
``Config`` and wire the shared transport pieces (timeouts, connection cap,
rate limit retries, circuit breaker and request budget) into the adapter.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import httpx

from relay.backends.base import BackendAdapter
from relay.circuit_breaker import CircuitBreaker
from relay.config import Config
from relay.exceptions import ConfigurationError
from relay.http import RetryConfig
from relay.logging import get_logger
from relay.rate_limiter import RequestRateLimiter
from relay.types import BackendKind

logger = get_logger(__name__)

# Builder functions take the config and an optional transport (for tests)
AdapterBuilder = Callable[[Config, httpx.BaseTransport | None], BackendAdapter]


class BackendAdapterFactory:
    """Factory for creating backend adapters by kind.

    Example:
        factory = create_default_factory()
        adapter = factory.create(BackendKind.GITHUB, config)
    """

    def __init__(self) -> None:
        self._builders: dict[BackendKind, AdapterBuilder] = {}

    def register(self, kind: BackendKind, builder: AdapterBuilder) -> None:
        """Register a builder function for a backend kind."""
        self._builders[kind] = builder
        logger.debug("Registered builder for backend: %s", kind.value)

    def create(
        self,
        kind: BackendKind,
        config: Config,
        transport: httpx.BaseTransport | None = None,
    ) -> BackendAdapter:
        """Create a new adapter instance.

        Args:
            kind: The backend to create an adapter for.
            config: Configuration object.
            transport: Optional httpx transport, e.g. httpx.MockTransport.

        Returns:
            A new BackendAdapter instance.

        Raises:
            ValueError: If no builder is registered for the backend kind.
        """
        if kind not in self._builders:
            available = [k.value for k in self._builders]
            raise ValueError(
                f"No builder registered for backend '{kind.value}'. "
                f"Available backends: {available}"
            )
        adapter = self._builders[kind](config, transport)
        logger.debug("Created %s adapter", kind.value)
        return adapter

    @property
    def registered_kinds(self) -> list[BackendKind]:
        """Return list of registered backend kinds."""
        return list(self._builders.keys())


def _transport_kwargs(
    kind: BackendKind, config: Config, transport: httpx.BaseTransport | None
) -> dict[str, Any]:
    """Keyword arguments shared by every HTTP adapter constructor."""
    http = config.http
    return {
        "timeout": httpx.Timeout(http.connect_timeout, read=http.read_timeout),
        "limits": httpx.Limits(
            max_connections=http.max_connections,
            max_keepalive_connections=max(1, http.max_connections // 2),
        ),
        "retry_config": RetryConfig(max_retries=http.max_rate_limit_retries),
        "circuit_breaker": CircuitBreaker(service_name=kind.value, config=config.circuit_breaker),
        "rate_limiter": RequestRateLimiter.from_config(config, service_name=kind.value),
        "transport": transport,
    }


def _build_github_adapter(
    config: Config, transport: httpx.BaseTransport | None
) -> BackendAdapter:
    from relay.backends.github import GitHubActionsAdapter

    return GitHubActionsAdapter(
        token=config.backend.auth_token,
        base_url=config.backend.base_url or None,
        **_transport_kwargs(BackendKind.GITHUB, config, transport),
    )


def _build_jenkins_adapter(
    config: Config, transport: httpx.BaseTransport | None
) -> BackendAdapter:
    from relay.backends.jenkins import JenkinsAdapter

    return JenkinsAdapter(
        base_url=config.backend.base_url,
        user=config.backend.auth_user,
        token=config.backend.auth_token,
        ref_parameter=config.backend.jenkins_ref_parameter,
        **_transport_kwargs(BackendKind.JENKINS, config, transport),
    )


def _build_azure_devops_adapter(
    config: Config, transport: httpx.BaseTransport | None
) -> BackendAdapter:
    from relay.backends.azure_devops import AzureDevOpsAdapter

    return AzureDevOpsAdapter(
        token=config.backend.auth_token,
        base_url=config.backend.base_url or None,
        **_transport_kwargs(BackendKind.AZURE_DEVOPS, config, transport),
    )


def create_default_factory() -> BackendAdapterFactory:
    """Create a factory with builders for all supported backends."""
    factory = BackendAdapterFactory()
    factory.register(BackendKind.GITHUB, _build_github_adapter)
    factory.register(BackendKind.JENKINS, _build_jenkins_adapter)
    factory.register(BackendKind.AZURE_DEVOPS, _build_azure_devops_adapter)
    return factory


def create_adapter(
    config: Config, transport: httpx.BaseTransport | None = None
) -> BackendAdapter:
    """Build the adapter for the configured backend.

    Raises:
        ConfigurationError: If no valid backend kind is configured.
    """
    kind = config.backend_kind
    if kind is None:
        raise ConfigurationError(
            f"Unknown backend '{config.backend.kind}'. "
            f"Valid backends: {', '.join(sorted(BackendKind.values()))}"
        )
    return create_default_factory().create(kind, config, transport)
