"""Provider adapters, one per upstream API surface."""

from mcp_connectors.auth.errors import ConfigurationError
from mcp_connectors.auth.providers.base import CallbackMode, ProviderAdapter
from mcp_connectors.auth.providers.console import ConsoleProvider
from mcp_connectors.auth.providers.google import (
    GmailProvider,
    GoogleCalendarProvider,
    GoogleDriveProvider,
    GoogleProvider,
)
from mcp_connectors.auth.providers.slack import SlackProvider
from mcp_connectors.config import ProviderSettings

PROVIDERS: dict[str, type[ProviderAdapter]] = {
    "gcal": GoogleCalendarProvider,
    "gmail": GmailProvider,
    "gdrive": GoogleDriveProvider,
    "slack": SlackProvider,
    "console": ConsoleProvider,
}


def get_provider(settings: ProviderSettings) -> ProviderAdapter:
    """Instantiate the adapter for a provider's settings.

    Raises:
        ConfigurationError: If the provider is unknown.
    """
    try:
        adapter_class = PROVIDERS[settings.provider]
    except KeyError:
        raise ConfigurationError(f"Unknown provider '{settings.provider}'") from None
    return adapter_class(settings)


__all__ = [
    "PROVIDERS",
    "CallbackMode",
    "ConsoleProvider",
    "GmailProvider",
    "GoogleCalendarProvider",
    "GoogleDriveProvider",
    "GoogleProvider",
    "ProviderAdapter",
    "SlackProvider",
    "get_provider",
]
