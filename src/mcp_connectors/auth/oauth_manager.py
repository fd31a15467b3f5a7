"""Interactive login flow: listener, browser, redirect, exchange, store.

The callback listener is always bound before the consent URL is opened, and
concurrent callers share one in-flight login so that a second bind on the
fixed port never happens.
"""

import asyncio
import logging
import secrets
import webbrowser
from collections.abc import Awaitable, Callable

from mcp_connectors.auth.callback import CallbackListener
from mcp_connectors.auth.errors import LoginTimedOut, MalformedCallback
from mcp_connectors.auth.models import CredentialRecord, PendingAuthorization, RedirectResult
from mcp_connectors.auth.providers.base import CallbackMode, ProviderAdapter
from mcp_connectors.auth.token_storage import CredentialStore
from mcp_connectors.config import ProviderSettings

logger = logging.getLogger(__name__)

BrowserOpener = Callable[[str], Awaitable[bool]]


async def open_in_browser(url: str) -> bool:
    """Open a URL in the default browser without blocking the event loop.

    Returns:
        True if a browser was launched.
    """
    loop = asyncio.get_running_loop()
    try:
        return bool(await loop.run_in_executor(None, webbrowser.open, url))
    except webbrowser.Error as e:
        logger.warning("Could not open browser: %s", e)
        return False


class AuthFlowCoordinator:
    """Runs one interactive login end to end and persists the result.

    Attributes:
        provider: Adapter for the upstream provider.
        store: Credential store the result is saved to.
        settings: Provider settings (port, callback path, timeout).
        last_consent_url: Most recent consent URL, for manual opening.

    Example:
        ```python
        coordinator = AuthFlowCoordinator(provider, store, settings)
        record = await coordinator.run_interactive_login()
        print(record.email)
        ```
    """

    def __init__(
        self,
        provider: ProviderAdapter,
        store: CredentialStore,
        settings: ProviderSettings,
        open_browser: BrowserOpener | None = None,
        on_consent_url: Callable[[str], None] | None = None,
    ) -> None:
        self.provider = provider
        self.store = store
        self.settings = settings
        self.last_consent_url: str | None = None
        self._open_browser = open_browser or open_in_browser
        self._on_consent_url = on_consent_url
        self._in_flight: asyncio.Task[CredentialRecord] | None = None
        self._pending: PendingAuthorization | None = None

    @property
    def pending(self) -> PendingAuthorization | None:
        """The login currently in flight, if any."""
        return self._pending

    @property
    def in_progress(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    async def run_interactive_login(self) -> CredentialRecord:
        """Perform the browser login, or join the one already in flight.

        Returns:
            The stored CredentialRecord.

        Raises:
            PortInUse: The callback port is taken.
            UserDeniedOrProviderError: The provider reported an error.
            MalformedCallback: The redirect lacked required parameters.
            LoginTimedOut: No redirect within the login window.
            ConfigurationError: Client credentials are missing.
        """
        if self._in_flight is None:
            task = asyncio.ensure_future(self._login())
            task.add_done_callback(self._clear_in_flight)
            self._in_flight = task
        else:
            logger.info("%s login already in progress, waiting for it", self.provider.title)
        return await asyncio.shield(self._in_flight)

    def _clear_in_flight(self, task: "asyncio.Task[CredentialRecord]") -> None:
        if self._in_flight is task:
            self._in_flight = None

    async def _login(self) -> CredentialRecord:
        listener = CallbackListener(
            port=self.settings.port,
            callback_path=self.settings.callback_path,
            required_params=self.provider.required_params,
            host=self.settings.host,
            timeout=self.settings.login_timeout,
            redirect_for=self.provider.callback_redirect,
        )
        pending = PendingAuthorization(listener_port=self.settings.port)
        self._pending = pending

        try:
            await listener.start()

            state = secrets.token_urlsafe(32)
            redirect_uri = self.settings.redirect_uri
            consent_url = self.provider.build_consent_url(redirect_uri, state)
            self.last_consent_url = consent_url
            if self._on_consent_url is not None:
                self._on_consent_url(consent_url)

            logger.info("Opening browser for %s authorization...", self.provider.title)
            logger.info("If browser doesn't open, visit: %s", consent_url)
            try:
                opened = await self._open_browser(consent_url)
            except Exception as e:
                logger.warning("Could not open browser: %s", e)
                opened = False
            if not opened:
                logger.warning("Browser did not open; open the URL above manually")

            result = await listener.wait()
            pending.mark_awaiting_exchange()
            record = await self._complete(result, state, redirect_uri)
            record = await self.provider.resolve_identity(record)

            self.store.save(record)
            pending.resolve(record)
            logger.info(
                "%s authentication successful%s",
                self.provider.title,
                f" as {record.email}" if record.email else "",
            )
            return record
        except LoginTimedOut as e:
            pending.fail(e, timed_out=True)
            raise
        except Exception as e:
            pending.fail(e)
            logger.error("%s authentication failed: %s", self.provider.title, e)
            raise
        finally:
            await listener.close()
            if self._pending is pending:
                self._pending = None

    async def _complete(
        self, result: RedirectResult, state: str, redirect_uri: str
    ) -> CredentialRecord:
        if self.provider.uses_state and result.get("state") is not None:
            if not secrets.compare_digest(result.get("state") or "", state):
                raise MalformedCallback("OAuth state mismatch in callback")

        if self.provider.callback_mode is CallbackMode.TOKEN:
            return self.provider.record_from_redirect(result)

        code = result.code
        if not code:
            raise MalformedCallback(["code"])
        return await self.provider.exchange_code(code, redirect_uri)
