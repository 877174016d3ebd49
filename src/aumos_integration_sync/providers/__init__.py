"""Vendor integration providers and the type → provider registry."""

from collections.abc import Callable

from aumos_integration_sync.errors import ConfigurationError
from aumos_integration_sync.providers.aws import AwsProvider
from aumos_integration_sync.providers.base import IntegrationProvider, ProviderContext
from aumos_integration_sync.providers.catalog import INTEGRATION_TYPES, IntegrationType
from aumos_integration_sync.providers.github import GitHubProvider
from aumos_integration_sync.providers.google_workspace import GoogleWorkspaceProvider

ProviderFactory = Callable[[str, ProviderContext], IntegrationProvider]

PROVIDER_REGISTRY: dict[str, type[IntegrationProvider]] = {
    GitHubProvider.type: GitHubProvider,
    AwsProvider.type: AwsProvider,
    GoogleWorkspaceProvider.type: GoogleWorkspaceProvider,
}


def create_provider(integration_type: str, context: ProviderContext) -> IntegrationProvider:
    """Instantiate the provider registered for an integration type.

    Args:
        integration_type: The Integration.type value (github, aws, gsuite).
        context: Ids, decrypted credentials and config for the instance.

    Returns:
        A disconnected provider instance.

    Raises:
        ConfigurationError: If no provider is registered for the type.
    """
    provider_cls = PROVIDER_REGISTRY.get(integration_type)
    if provider_cls is None:
        raise ConfigurationError(f"Unsupported integration type: {integration_type}")
    return provider_cls(context)


def is_supported(integration_type: str) -> bool:
    return integration_type in PROVIDER_REGISTRY


__all__ = [
    "INTEGRATION_TYPES",
    "PROVIDER_REGISTRY",
    "AwsProvider",
    "GitHubProvider",
    "GoogleWorkspaceProvider",
    "IntegrationProvider",
    "IntegrationType",
    "ProviderContext",
    "ProviderFactory",
    "create_provider",
    "is_supported",
]
