"""MCP server implementation shared by the connectors.

Every connector exposes the same authentication tools:
- authenticate: Browser sign-in, replacing stored credentials
- logout: Delete stored credentials
- auth_status: Token, client and pending-login state
- set_session_token: Session-only manual token
- whoami: Authenticated identity

Provider tool catalogs are added with ConnectorServer.register_tool().

Transport: Stdio
Authentication: OAuth 2.0 authorization code or console session cookie
"""

from mcp_connectors.config import load_settings
from mcp_connectors.server.connector_server import ConnectorServer, main


def create_server(provider: str) -> ConnectorServer:
    """Create a connector server for a provider.

    Returns:
        ConnectorServer: Configured server instance ready to run.

    Example:
        >>> server = create_server("gcal")
        >>> asyncio.run(server.run())
    """
    return ConnectorServer(load_settings(provider))


__all__ = ["create_server", "ConnectorServer", "main"]
