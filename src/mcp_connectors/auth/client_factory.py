"""Lazy, refresh-aware construction of upstream API clients.

AuthenticatedClientFactory is the per-provider auth state owned by a server
process. Tool handlers call ensure_ready() before every upstream call; the
first call loads, refreshes or interactively obtains a credential, and all
concurrent callers share that single attempt.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import httpx

from mcp_connectors.auth.errors import NotAuthenticated, RefreshFailed
from mcp_connectors.auth.models import CredentialRecord
from mcp_connectors.auth.oauth_manager import AuthFlowCoordinator
from mcp_connectors.auth.providers.base import ProviderAdapter
from mcp_connectors.auth.token_storage import CredentialStore

logger = logging.getLogger(__name__)

# Tokens expiring within this window are renewed before use
EXPIRY_WINDOW = timedelta(minutes=5)


class _Superseded(Exception):
    """An initialization was replaced before it finished."""


class ClientState(str, Enum):
    """Initialization state of an AuthenticatedClientFactory."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class UpstreamClient:
    """Authenticated HTTP handle for one provider's API.

    Wraps a pooled httpx.AsyncClient carrying the provider's auth headers.
    """

    def __init__(self, base_url: str, headers: dict[str, str]) -> None:
        self.base_url = base_url
        self._http_client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Accept": "application/json", **headers},
            http2=True,
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            timeout=httpx.Timeout(30.0, connect=10.0),
        )

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http_client

    async def request(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make an authenticated request and decode the JSON body.

        Raises:
            httpx.HTTPStatusError: If the request fails.
        """
        response = await self._http_client.request(method, url, params=params, json=json_data)
        response.raise_for_status()
        if not response.content:
            return {}
        result: dict[str, Any] = response.json()
        return result

    async def aclose(self) -> None:
        await self._http_client.aclose()


class AuthenticatedClientFactory:
    """Produces a ready upstream client, refreshing or logging in as needed.

    State machine: uninitialized -> initializing -> ready. A ready factory
    whose credential enters the expiry window, or a forced re-authentication,
    goes back through initializing.

    Attributes:
        provider: Adapter for the upstream provider.
        store: Credential store for this provider.
        coordinator: Interactive login flow.
    """

    def __init__(
        self,
        provider: ProviderAdapter,
        store: CredentialStore,
        coordinator: AuthFlowCoordinator,
    ) -> None:
        self.provider = provider
        self.store = store
        self.coordinator = coordinator
        self._record: CredentialRecord | None = None
        self._client: UpstreamClient | None = None
        self._initializing: asyncio.Task[UpstreamClient] | None = None
        self._initializing_popup = False
        self._generation = 0
        self.is_new_auth = False

    @property
    def state(self) -> ClientState:
        if self._initializing is not None and not self._initializing.done():
            return ClientState.INITIALIZING
        if self._client is not None:
            return ClientState.READY
        return ClientState.UNINITIALIZED

    @property
    def record(self) -> CredentialRecord | None:
        return self._record

    @property
    def client(self) -> UpstreamClient | None:
        return self._client

    @property
    def is_authenticated(self) -> bool:
        return self._client is not None

    def _is_usable(self) -> bool:
        if self._client is None or self._record is None:
            return False
        return not self._record.is_expired(int(EXPIRY_WINDOW.total_seconds()))

    async def ensure_ready(self, auto_popup: bool = True) -> UpstreamClient:
        """Make sure an authenticated client exists.

        Idempotent and cheap once ready. Concurrent callers share a single
        initialization attempt, including its browser login. A caller that
        allows the browser never settles for a shared attempt that did not.

        Args:
            auto_popup: Open the browser if no usable credential exists.

        Returns:
            The ready UpstreamClient.

        Raises:
            NotAuthenticated: No usable credential and auto_popup is False.
            AuthError: Any interactive login failure, unchanged.
        """
        if self._is_usable():
            assert self._client is not None
            return self._client

        if self._initializing is None:
            self._start_initializing(auto_popup)
        task = self._initializing
        shared_popup = self._initializing_popup
        assert task is not None
        try:
            return await asyncio.shield(task)
        except _Superseded:
            # The attempt was replaced; retry against the current state
            return await self.ensure_ready(auto_popup)
        except NotAuthenticated:
            if not auto_popup or shared_popup:
                raise
        self._clear_initializing(task)
        return await self.ensure_ready(auto_popup=True)

    def _start_initializing(self, auto_popup: bool) -> None:
        task = asyncio.ensure_future(self._initialize(auto_popup, self._generation))
        task.add_done_callback(self._clear_initializing)
        self._initializing = task
        self._initializing_popup = auto_popup

    def _clear_initializing(self, task: "asyncio.Task[UpstreamClient]") -> None:
        if self._initializing is task:
            self._initializing = None

    def _invalidate(self) -> None:
        """Detach any running initialization so its result is dropped."""
        self._generation += 1
        self._initializing = None

    def _check_current(self, generation: int) -> None:
        if generation != self._generation:
            logger.info("%s initialization superseded, dropping its result", self.provider.title)
            raise _Superseded()

    async def _initialize(self, auto_popup: bool, generation: int) -> UpstreamClient:
        record = self._record if self._record is not None else self.store.load(allow_expired=True)
        is_new_auth = False

        if record is not None and record.is_expired(int(EXPIRY_WINDOW.total_seconds())):
            if record.refresh_token and self.provider.supports_refresh:
                logger.info("%s token expired, attempting refresh...", self.provider.title)
                record = await self._refresh(record, generation)
            else:
                logger.info("%s token expired and cannot be refreshed", self.provider.title)
                record = None

        if record is None:
            if not auto_popup:
                raise NotAuthenticated(self.provider.name)
            logger.info("No valid %s token found, starting OAuth flow...", self.provider.title)
            record = await self.coordinator.run_interactive_login()
            self._check_current(generation)
            is_new_auth = True

        client = await self._install(record)
        self.is_new_auth = is_new_auth
        if is_new_auth:
            logger.info("%s authenticated via browser login", self.provider.title)
        else:
            logger.info("%s client initialized with existing token", self.provider.title)
        return client

    async def _refresh(self, record: CredentialRecord, generation: int) -> CredentialRecord | None:
        try:
            renewed = await self.provider.refresh(record)
        except RefreshFailed as e:
            # The old record stays on disk: a transient failure should not force a login
            logger.warning("Failed to refresh %s token: %s", self.provider.title, e)
            self._check_current(generation)
            return None
        self._check_current(generation)
        self.store.save(renewed)
        logger.info("%s token refreshed successfully", self.provider.title)
        return renewed

    async def _install(self, record: CredentialRecord) -> UpstreamClient:
        old_client = self._client
        self._record = record
        self._client = UpstreamClient(self.provider.api_base_url, self.provider.auth_headers(record))
        if old_client is not None:
            await old_client.aclose()
        return self._client

    async def _discard(self) -> None:
        client, self._client = self._client, None
        self._record = None
        if client is not None:
            await client.aclose()

    async def force_reauthenticate(self) -> CredentialRecord:
        """Clear stored credentials and run the browser login again.

        An initialization already in flight is abandoned, never joined.

        Returns:
            The new CredentialRecord.
        """
        self._invalidate()
        self.store.clear()
        await self._discard()
        await self.ensure_ready(auto_popup=True)
        assert self._record is not None
        return self._record

    async def logout(self) -> None:
        """Clear stored credentials and drop the cached client."""
        self._invalidate()
        self.store.clear()
        await self._discard()
        logger.info("%s logged out", self.provider.title)

    async def use_manual_token(self, token: str) -> UpstreamClient:
        """Use a pre-supplied token without persisting it.

        The identity behind a manual token is unknown.
        """
        self._invalidate()
        record = self.provider.record_from_manual_token(token)
        client = await self._install(record)
        self.is_new_auth = False
        logger.info("%s client initialized from a manually supplied token", self.provider.title)
        return client

    def status(self) -> dict[str, Any]:
        """Summarize authentication state for status tools."""
        record = self._record or self.store.load(allow_expired=True)
        expires_at: datetime | None = record.expires_at if record else None
        return {
            "provider": self.provider.name,
            "state": self.state.value,
            "authenticated": self.is_authenticated,
            "stored": self.store.get_status().value,
            "email": record.email if record else None,
            "display_name": (
                record.identity.display_name if record and record.identity else None
            ),
            "expires_at": expires_at.isoformat() if expires_at else None,
            "expired": record.is_expired() if record else None,
            "login_in_progress": self.coordinator.in_progress,
            "checked_at": datetime.now(timezone.utc).isoformat(),
        }

    async def aclose(self) -> None:
        """Release the HTTP client. Stored credentials are kept."""
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()
