"""Backend adapters for CI systems."""

from relay.backends.azure_devops import AzureDevOpsAdapter
from relay.backends.base import BackendAdapter, HttpBackendAdapter
from relay.backends.factory import BackendAdapterFactory, create_adapter, create_default_factory
from relay.backends.github import GitHubActionsAdapter
from relay.backends.jenkins import JenkinsAdapter

__all__ = [
    "AzureDevOpsAdapter",
    "BackendAdapter",
    "BackendAdapterFactory",
    "GitHubActionsAdapter",
    "HttpBackendAdapter",
    "JenkinsAdapter",
    "create_adapter",
    "create_default_factory",
]
