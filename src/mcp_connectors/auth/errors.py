"""Error taxonomy for the authentication core.

Every error raised by the listener, the login flow or the client factory
derives from AuthError so tool handlers can catch the whole family. None of
these are retried internally except RefreshFailed, which the factory turns
into a fall back to interactive login.
"""


class AuthError(Exception):
    """Base class for authentication failures."""


class ConfigurationError(AuthError):
    """Provider is not configured well enough to start a login."""


class PortInUse(AuthError):
    """The local callback listener could not bind its port."""

    def __init__(self, port: int) -> None:
        self.port = port
        super().__init__(
            f"Port {port} is already in use. "
            "Close the other process or set a different callback port."
        )


class UserDeniedOrProviderError(AuthError):
    """The provider redirected back with an error parameter."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class MalformedCallback(UserDeniedOrProviderError):
    """The redirect looked successful but lacked required parameters."""

    def __init__(self, missing: list[str] | str) -> None:
        if isinstance(missing, str):
            self.missing: list[str] = []
            message = missing
        else:
            self.missing = list(missing)
            message = f"Missing required parameters in callback: {', '.join(self.missing)}"
        super().__init__(message)


class LoginTimedOut(AuthError):
    """No redirect arrived within the login window."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Authentication timed out after {timeout:g} seconds. Please try again.")


class RefreshFailed(AuthError):
    """Silent token renewal was rejected or could not reach the provider."""


class NotAuthenticated(AuthError):
    """No usable credential and interactive login was not allowed."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(
            f"{provider} is not authenticated. "
            f"Use the authenticate tool or run: mcp-connectors login {provider}"
        )
