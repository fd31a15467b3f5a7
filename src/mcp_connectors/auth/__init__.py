"""OAuth and session authentication shared by every connector server.

This package holds the credential lifecycle: persisted credentials, the
local redirect listener, the interactive login flow and the lazily
initialized upstream client.

Quick Start:
    ```python
    from mcp_connectors.auth import build_auth_state
    from mcp_connectors.config import load_settings

    auth = build_auth_state(load_settings("gcal"))

    # Loads, refreshes or opens the browser as needed
    client = await auth.ensure_ready(auto_popup=True)
    calendars = await client.request("GET", "/users/me/calendarList")
    ```
"""

from mcp_connectors.auth.callback import CallbackListener
from mcp_connectors.auth.client_factory import (
    AuthenticatedClientFactory,
    ClientState,
    UpstreamClient,
)
from mcp_connectors.auth.errors import (
    AuthError,
    ConfigurationError,
    LoginTimedOut,
    MalformedCallback,
    NotAuthenticated,
    PortInUse,
    RefreshFailed,
    UserDeniedOrProviderError,
)
from mcp_connectors.auth.models import (
    AuthorizationState,
    CredentialRecord,
    Identity,
    PendingAuthorization,
    RedirectResult,
    TokenStatus,
)
from mcp_connectors.auth.oauth_manager import AuthFlowCoordinator
from mcp_connectors.auth.providers import get_provider
from mcp_connectors.auth.token_storage import CredentialStore
from mcp_connectors.config import ProviderSettings


def build_auth_state(
    settings: ProviderSettings,
    coordinator_kwargs: dict | None = None,
) -> AuthenticatedClientFactory:
    """Wire store, login flow and client factory for one provider.

    Args:
        settings: Resolved provider settings.
        coordinator_kwargs: Extra arguments for AuthFlowCoordinator
            (open_browser, on_consent_url).

    Returns:
        The provider's AuthenticatedClientFactory.
    """
    provider = get_provider(settings)
    store = CredentialStore(settings.token_path)
    coordinator = AuthFlowCoordinator(provider, store, settings, **(coordinator_kwargs or {}))
    return AuthenticatedClientFactory(provider, store, coordinator)


__all__ = [
    "AuthError",
    "AuthFlowCoordinator",
    "AuthenticatedClientFactory",
    "AuthorizationState",
    "CallbackListener",
    "ClientState",
    "ConfigurationError",
    "CredentialRecord",
    "CredentialStore",
    "Identity",
    "LoginTimedOut",
    "MalformedCallback",
    "NotAuthenticated",
    "PendingAuthorization",
    "PortInUse",
    "RedirectResult",
    "RefreshFailed",
    "TokenStatus",
    "UpstreamClient",
    "UserDeniedOrProviderError",
    "build_auth_state",
]
