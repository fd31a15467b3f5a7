"""Local HTTP listener that captures a single OAuth redirect.

The listener is bound before the consent URL is opened so that a fast
provider redirect cannot arrive at a closed port. It settles a one-shot
future on the first request to the callback path; later requests get a
page but never settle it again.
"""

import asyncio
import errno
import html
import logging
from collections.abc import Callable, Iterable

from aiohttp import web

from mcp_connectors.auth.errors import (
    AuthError,
    LoginTimedOut,
    MalformedCallback,
    PortInUse,
    UserDeniedOrProviderError,
)
from mcp_connectors.auth.models import RedirectResult
from mcp_connectors.config import DEFAULT_CALLBACK_HOST, DEFAULT_LOGIN_TIMEOUT

logger = logging.getLogger(__name__)

# Maps (query params, error or None) to a provider confirmation page, or None
RedirectFor = Callable[[dict[str, str], AuthError | None], str | None]

_PAGE = """<html>
  <body style="font-family: sans-serif; text-align: center; padding: 50px;">
    <h1 style="color: {color};">{title}</h1>
    <p>{message}</p>
    <p>{hint}</p>
  </body>
</html>
"""


def render_page(success: bool, message: str) -> str:
    """Render the page shown in the browser after the redirect."""
    if success:
        return _PAGE.format(
            color="#1a73e8",
            title="Authentication Successful!",
            message=html.escape(message),
            hint="You can close this window and return to your assistant.",
        )
    return _PAGE.format(
        color="#d93025",
        title="Authentication Failed",
        message=html.escape(message),
        hint="You can close this window and try again.",
    )


class CallbackListener:
    """Short-lived aiohttp server waiting for one provider redirect.

    Attributes:
        port: Local port to bind.
        callback_path: Path the provider redirects to (e.g. /oauth2callback).
        required_params: Query parameters a successful redirect must carry.
        host: Interface to bind.
        timeout: Seconds to wait for the redirect, counted from start().

    Example:
        ```python
        listener = CallbackListener(3036, "/oauth2callback", ["code"])
        await listener.start()
        webbrowser.open(consent_url)
        result = await listener.wait()
        print(result.code)
        ```
    """

    def __init__(
        self,
        port: int,
        callback_path: str = "/callback",
        required_params: Iterable[str] = ("code",),
        host: str = DEFAULT_CALLBACK_HOST,
        timeout: float = DEFAULT_LOGIN_TIMEOUT,
        redirect_for: RedirectFor | None = None,
    ) -> None:
        self.port = port
        self.callback_path = callback_path if callback_path.startswith("/") else f"/{callback_path}"
        self.required_params = tuple(required_params)
        self.host = host
        self.timeout = timeout
        self._redirect_for = redirect_for
        self._runner: web.AppRunner | None = None
        self._result: asyncio.Future[RedirectResult] | None = None
        self._deadline: float | None = None

    @property
    def is_listening(self) -> bool:
        return self._runner is not None

    @property
    def settled(self) -> bool:
        return self._result is not None and self._result.done()

    async def start(self) -> None:
        """Bind the port and start accepting connections.

        Raises:
            PortInUse: If the port is already bound. Not retried.
            RuntimeError: If the listener was already started.
        """
        if self._runner is not None or self._result is not None:
            raise RuntimeError("CallbackListener is single use")

        loop = asyncio.get_running_loop()
        self._result = loop.create_future()

        app = web.Application()
        app.router.add_get(self.callback_path, self._handle_callback, allow_head=False)

        runner = web.AppRunner(app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError as e:
            await runner.cleanup()
            if e.errno == errno.EADDRINUSE:
                raise PortInUse(self.port) from e
            raise

        self._runner = runner
        if self.port == 0:
            self.port = runner.addresses[0][1]
        self._deadline = loop.time() + self.timeout
        logger.info(
            "OAuth callback server listening on http://%s:%d%s",
            self.host,
            self.port,
            self.callback_path,
        )

    async def wait(self) -> RedirectResult:
        """Wait for the redirect and shut the listener down.

        Returns:
            The captured redirect parameters.

        Raises:
            UserDeniedOrProviderError: Provider sent an error parameter.
            MalformedCallback: Required parameters were missing.
            LoginTimedOut: Nothing arrived before the deadline.
        """
        if self._result is None or self._deadline is None:
            raise RuntimeError("CallbackListener.start() must be called before wait()")

        remaining = max(0.0, self._deadline - asyncio.get_running_loop().time())
        try:
            return await asyncio.wait_for(asyncio.shield(self._result), timeout=remaining)
        except asyncio.TimeoutError:
            self._result.cancel()
            logger.warning("No OAuth redirect received within %g seconds", self.timeout)
            raise LoginTimedOut(self.timeout) from None
        finally:
            await self.close()

    async def await_redirect(self) -> RedirectResult:
        """Start the listener and wait for the redirect."""
        await self.start()
        return await self.wait()

    async def close(self) -> None:
        """Stop the server. Safe to call more than once."""
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()
            logger.debug("OAuth callback server on port %d closed", self.port)

    def _settle(self, result: RedirectResult | None, error: AuthError | None) -> bool:
        assert self._result is not None
        if self._result.done():
            return False
        if error is not None:
            self._result.set_exception(error)
            # Retrieved by wait(); avoid "exception never retrieved" on teardown paths
            self._result.exception()
        else:
            self._result.set_result(result)
        return True

    async def _handle_callback(self, request: web.Request) -> web.Response:
        """Handle GET request from the provider redirect."""
        if self.settled:
            return web.Response(
                text=render_page(True, "This sign-in was already processed."),
                content_type="text/html",
            )

        params = {key: request.query[key] for key in request.query.keys()}
        error: AuthError | None = None

        if params.get("error"):
            error = UserDeniedOrProviderError(params["error"])
            logger.warning("OAuth provider returned error: %s", params["error"])
        else:
            missing = [name for name in self.required_params if not params.get(name)]
            if missing:
                error = MalformedCallback(missing)
                logger.warning("OAuth callback missing parameters: %s", ", ".join(missing))

        self._settle(RedirectResult(params=params) if error is None else None, error)

        try:
            return self._render_response(params, error)
        except Exception:
            logger.exception("Failed to render OAuth callback page")
            return web.Response(text="Authentication processed.", content_type="text/plain")

    def _render_response(self, params: dict[str, str], error: AuthError | None) -> web.Response:
        location = self._redirect_for(params, error) if self._redirect_for else None
        if location:
            status = "failed" if error else "successful"
            return web.Response(
                status=302,
                headers={"Location": location},
                text=f"Authentication {status}.\n\nRedirecting to {location}\n",
                content_type="text/plain",
            )

        if error is not None:
            return web.Response(
                status=400, text=render_page(False, str(error)), content_type="text/html"
            )
        return web.Response(
            text=render_page(True, "Authorization received."), content_type="text/html"
        )
