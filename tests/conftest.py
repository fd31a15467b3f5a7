"""Shared pytest fixtures for mcp-connectors tests.

This module provides reusable fixtures for credential records, isolated
provider settings, a scripted provider adapter and a stand-in browser that
follows the consent URL back to the local callback listener.
"""

import asyncio
import socket
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
import pytest

from mcp_connectors.auth.client_factory import AuthenticatedClientFactory
from mcp_connectors.auth.errors import RefreshFailed
from mcp_connectors.auth.models import CredentialRecord, Identity
from mcp_connectors.auth.oauth_manager import AuthFlowCoordinator
from mcp_connectors.auth.providers.base import ProviderAdapter
from mcp_connectors.auth.token_storage import CredentialStore
from mcp_connectors.config import ProviderSettings, load_settings

# =============================================================================
# Credential Record Fixtures
# =============================================================================


@pytest.fixture
def valid_record() -> CredentialRecord:
    """Create a valid, non-expired credential record."""
    return CredentialRecord(
        access_token="test_access_token_abc123",
        refresh_token="test_refresh_token_xyz789",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        scope="https://www.googleapis.com/auth/calendar",
        identity=Identity(email="user@example.com", display_name="Test User"),
    )


@pytest.fixture
def expired_record() -> CredentialRecord:
    """Create an expired credential record that can be refreshed."""
    return CredentialRecord(
        access_token="expired_access_token",
        refresh_token="test_refresh_token",
        expires_at=datetime.now(timezone.utc) - timedelta(hours=1),
        scope="https://www.googleapis.com/auth/calendar",
        identity=Identity(email="user@example.com"),
    )


# =============================================================================
# Settings and Storage Fixtures
# =============================================================================


@pytest.fixture
def free_port() -> int:
    """Find a local port nothing is listening on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port: int = sock.getsockname()[1]
    return port


@pytest.fixture
def connectors_home(tmp_path: Path) -> Path:
    """Directory standing in for ~/.mcp-connectors."""
    return tmp_path / ".mcp-connectors"


@pytest.fixture
def make_settings(
    connectors_home: Path, free_port: int
) -> Callable[..., ProviderSettings]:
    """Build isolated settings for a provider.

    Extra keyword arguments become <PREFIX>_<NAME> environment variables.
    """

    def _make(provider: str = "gcal", **env: str) -> ProviderSettings:
        prefix = provider.upper()
        environ = {
            "MCP_CONNECTORS_HOME": str(connectors_home),
            f"{prefix}_CLIENT_ID": "test-client-id",
            f"{prefix}_CLIENT_SECRET": "test-client-secret",  # pragma: allowlist secret
            f"{prefix}_CALLBACK_PORT": str(free_port),
        }
        environ.update({f"{prefix}_{key.upper()}": value for key, value in env.items()})
        return load_settings(provider, environ=environ)

    return _make


@pytest.fixture
def settings(make_settings: Callable[..., ProviderSettings]) -> ProviderSettings:
    """Google Calendar settings with a short login window."""
    return make_settings("gcal").model_copy(update={"login_timeout": 5.0})


@pytest.fixture
def store(settings: ProviderSettings) -> CredentialStore:
    """Create a CredentialStore under the temporary home."""
    return CredentialStore(settings.token_path)


# =============================================================================
# Scripted Provider
# =============================================================================


class FakeProvider(ProviderAdapter):
    """Code-grant provider that never leaves the machine."""

    name = "gcal"
    title = "Fake Provider"
    api_base_url = "https://api.provider.test"

    def __init__(
        self,
        settings: ProviderSettings,
        refresh_error: Exception | None = None,
        refresh_delay: float = 0.0,
    ) -> None:
        super().__init__(settings)
        self.refresh_error = refresh_error
        self.refresh_delay = refresh_delay
        self.consent_urls: list[str] = []
        self.exchanged: list[str] = []
        self.refreshed = 0

    @property
    def supports_refresh(self) -> bool:
        return True

    def build_consent_url(self, redirect_uri: str, state: str) -> str:
        url = "https://provider.test/authorize?" + urlencode(
            {"redirect_uri": redirect_uri, "state": state}
        )
        self.consent_urls.append(url)
        return url

    async def exchange_code(self, code: str, redirect_uri: str) -> CredentialRecord:
        self.exchanged.append(code)
        return CredentialRecord(
            access_token=f"access-{code}",
            refresh_token="new-refresh-token",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            scope="read",
        )

    async def refresh(self, record: CredentialRecord) -> CredentialRecord:
        self.refreshed += 1
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        return record.model_copy(
            update={
                "access_token": "refreshed-access-token",
                "expires_at": datetime.now(timezone.utc) + timedelta(hours=1),
            }
        )

    async def resolve_identity(self, record: CredentialRecord) -> CredentialRecord:
        return record.model_copy(update={"identity": Identity(email="user@example.com")})


@pytest.fixture
def fake_provider(settings: ProviderSettings) -> FakeProvider:
    """Create a scripted provider adapter."""
    return FakeProvider(settings)


@pytest.fixture
def failing_refresh_provider(settings: ProviderSettings) -> FakeProvider:
    """Create a provider whose refresh endpoint rejects the refresh token."""
    return FakeProvider(settings, refresh_error=RefreshFailed("invalid_grant"))


@pytest.fixture
def slow_refresh_provider(settings: ProviderSettings) -> FakeProvider:
    """Create a provider whose refresh takes long enough to overlap other calls."""
    return FakeProvider(settings, refresh_delay=0.2)


# =============================================================================
# Browser Stand-in
# =============================================================================


class FakeBrowser:
    """Plays the user's browser: opens the consent URL, then hits the callback.

    Attributes:
        target: Callback URL on the loopback interface.
        params: Query parameters the provider would redirect with.
        echo_state: Copy the state parameter from the consent URL.
        delay: Seconds to wait before following the redirect.
        follow: Whether to hit the callback at all.
    """

    def __init__(
        self,
        target: str,
        params: dict[str, str] | None = None,
        echo_state: bool = True,
        delay: float = 0.0,
        follow: bool = True,
    ) -> None:
        self.target = target
        self.params = params if params is not None else {"code": "auth-code"}
        self.echo_state = echo_state
        self.delay = delay
        self.follow = follow
        self.opened: list[str] = []
        self.responses: list[httpx.Response] = []

    async def __call__(self, url: str) -> bool:
        self.opened.append(url)
        if not self.follow:
            return True

        params = dict(self.params)
        state = parse_qs(urlparse(url).query).get("state")
        if self.echo_state and state:
            params.setdefault("state", state[0])

        if self.delay:
            await asyncio.sleep(self.delay)
        async with httpx.AsyncClient() as client:
            self.responses.append(await client.get(self.target, params=params))
        return True


def callback_target(settings: ProviderSettings) -> str:
    """Loopback URL of a provider's callback listener."""
    return f"http://127.0.0.1:{settings.port}{settings.callback_path}"


@pytest.fixture
def make_browser(settings: ProviderSettings) -> Callable[..., FakeBrowser]:
    """Build a browser stand-in aimed at a provider's callback listener."""

    def _make(target_settings: ProviderSettings | None = None, **kwargs: Any) -> FakeBrowser:
        return FakeBrowser(callback_target(target_settings or settings), **kwargs)

    return _make


@pytest.fixture
def browser(make_browser: Callable[..., FakeBrowser]) -> FakeBrowser:
    """Create a browser that completes the consent with an authorization code."""
    return make_browser()


@pytest.fixture
def make_auth(
    store: CredentialStore, settings: ProviderSettings
) -> Callable[..., AuthenticatedClientFactory]:
    """Wire a client factory around a provider and a browser stand-in."""

    def _make(provider: ProviderAdapter, browser: FakeBrowser) -> AuthenticatedClientFactory:
        coordinator = AuthFlowCoordinator(provider, store, settings, open_browser=browser)
        return AuthenticatedClientFactory(provider, store, coordinator)

    return _make
