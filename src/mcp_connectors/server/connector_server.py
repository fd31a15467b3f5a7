"""MCP stdio server shared by every connector.

Each server process owns one AuthenticatedClientFactory for its provider.
The built-in tools manage authentication; provider tool catalogs plug in
through register_tool() and receive the factory with every call.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from mcp_connectors.auth import (
    AuthenticatedClientFactory,
    AuthError,
    NotAuthenticated,
    build_auth_state,
)
from mcp_connectors.config import ProviderSettings, load_settings

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any], AuthenticatedClientFactory], Awaitable[dict[str, Any]]]


@dataclass
class RegisteredTool:
    tool: Tool
    handler: ToolHandler
    requires_auth: bool = True


class ConnectorServer:
    """MCP server for one upstream provider.

    Provides the authentication tools every connector exposes:
    - authenticate: Force a fresh browser login
    - logout: Forget stored credentials
    - auth_status: Report token and login state
    - set_session_token: Use a manually supplied token for this session
    - whoami: Report the authenticated identity

    Attributes:
        settings: Resolved provider settings.
        auth: Per-provider authentication state.
        server: MCP Server instance.
    """

    def __init__(
        self,
        settings: ProviderSettings,
        auth: AuthenticatedClientFactory | None = None,
    ) -> None:
        self.settings = settings
        self.auth = auth or build_auth_state(settings)
        self.server = Server(f"mcp-connectors-{settings.provider}")
        self._tools: dict[str, RegisteredTool] = {}
        self._register_auth_tools()
        self._setup_handlers()

    @property
    def provider_title(self) -> str:
        return self.auth.provider.title

    def register_tool(self, tool: Tool, handler: ToolHandler, requires_auth: bool = True) -> None:
        """Add a provider tool.

        Args:
            tool: MCP tool definition.
            handler: Coroutine called with (arguments, auth).
            requires_auth: Make sure a client is ready before calling handler.

        Raises:
            ValueError: If a tool with the same name is already registered.
        """
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = RegisteredTool(tool, handler, requires_auth)

    def list_tools(self) -> list[Tool]:
        return [entry.tool for entry in self._tools.values()]

    def _register_auth_tools(self) -> None:
        empty_schema: dict[str, Any] = {"type": "object", "properties": {}, "required": []}
        title = self.provider_title

        self.register_tool(
            Tool(
                name="authenticate",
                description=(
                    f"Sign in to {title} in the browser. Clears any stored credentials "
                    "and starts a new login."
                ),
                inputSchema=empty_schema,
            ),
            self._authenticate,
            requires_auth=False,
        )
        self.register_tool(
            Tool(
                name="logout",
                description=f"Sign out of {title} and delete stored credentials",
                inputSchema=empty_schema,
            ),
            self._logout,
            requires_auth=False,
        )
        self.register_tool(
            Tool(
                name="auth_status",
                description=f"Show {title} authentication status",
                inputSchema=empty_schema,
            ),
            self._auth_status,
            requires_auth=False,
        )
        self.register_tool(
            Tool(
                name="set_session_token",
                description=(
                    f"Use a manually obtained {title} token for this session. "
                    "The token is not saved."
                ),
                inputSchema={
                    "type": "object",
                    "properties": {
                        "token": {
                            "type": "string",
                            "description": "Access token, or name=value for session cookies",
                        },
                    },
                    "required": ["token"],
                },
            ),
            self._set_session_token,
            requires_auth=False,
        )
        self.register_tool(
            Tool(
                name="whoami",
                description=f"Show the {title} account this server is signed in as",
                inputSchema=empty_schema,
            ),
            self._whoami,
        )

    def _setup_handlers(self) -> None:
        """Register MCP tool handlers."""

        @self.server.list_tools()
        async def list_tools() -> list[Tool]:
            """Return list of available tools."""
            return self.list_tools()

        @self.server.call_tool()
        async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
            """Handle tool calls."""
            return await self.call_tool(name, arguments)

    async def call_tool(self, name: str, arguments: dict[str, Any] | None) -> list[TextContent]:
        """Run a tool and wrap its result (or error) as JSON text."""
        try:
            result = await self._dispatch_tool(name, arguments or {})
            return [TextContent(type="text", text=json.dumps(result, indent=2, default=str))]
        except AuthError as e:
            logger.warning("Tool %s failed: %s", name, e)
            return [TextContent(type="text", text=json.dumps({"error": str(e)}, indent=2))]
        except Exception as e:
            logger.exception("Error calling tool %s", name)
            return [TextContent(type="text", text=json.dumps({"error": str(e)}, indent=2))]

    async def _dispatch_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        entry = self._tools.get(name)
        if entry is None:
            raise ValueError(f"Unknown tool: {name}")
        if entry.requires_auth:
            await self.auth.ensure_ready(auto_popup=self.settings.auto_popup)
        return await entry.handler(arguments, self.auth)

    async def _authenticate(
        self, arguments: dict[str, Any], auth: AuthenticatedClientFactory
    ) -> dict[str, Any]:
        record = await auth.force_reauthenticate()
        return {
            "status": "authenticated",
            "provider": auth.provider.name,
            "email": record.email,
            "message": (
                f"Successfully authenticated as {record.email}"
                if record.email
                else f"Successfully authenticated with {auth.provider.title}"
            ),
        }

    async def _logout(
        self, arguments: dict[str, Any], auth: AuthenticatedClientFactory
    ) -> dict[str, Any]:
        await auth.logout()
        return {
            "status": "logged_out",
            "provider": auth.provider.name,
            "message": "Credentials cleared. Use authenticate to sign in again.",
        }

    async def _auth_status(
        self, arguments: dict[str, Any], auth: AuthenticatedClientFactory
    ) -> dict[str, Any]:
        status = auth.status()
        pending = auth.coordinator.pending
        if pending is not None:
            status["pending_login"] = {
                "state": pending.state.value,
                "listener_port": pending.listener_port,
                "started_at": pending.started_at.isoformat(),
            }
        if auth.coordinator.last_consent_url and auth.coordinator.in_progress:
            status["consent_url"] = auth.coordinator.last_consent_url
        return status

    async def _set_session_token(
        self, arguments: dict[str, Any], auth: AuthenticatedClientFactory
    ) -> dict[str, Any]:
        token = str(arguments.get("token") or "").strip()
        if not token:
            raise ValueError("token is required")
        await auth.use_manual_token(token)
        return {
            "status": "session_token_set",
            "provider": auth.provider.name,
            "persisted": False,
        }

    async def _whoami(
        self, arguments: dict[str, Any], auth: AuthenticatedClientFactory
    ) -> dict[str, Any]:
        record = auth.record
        identity = record.identity if record else None
        return {
            "provider": auth.provider.name,
            "email": identity.email if identity else None,
            "display_name": identity.display_name if identity else None,
            "expires_at": record.expires_at.isoformat() if record and record.expires_at else None,
        }

    async def initialize(self) -> None:
        """Pick up existing credentials without opening a browser."""
        if self.settings.session_token:
            await self.auth.use_manual_token(self.settings.session_token)
            return
        try:
            await self.auth.ensure_ready(auto_popup=False)
        except NotAuthenticated:
            logger.info(
                "No stored %s credentials; sign-in will start on first use", self.provider_title
            )
        except AuthError as e:
            logger.warning("Could not initialize %s client: %s", self.provider_title, e)

    async def close(self) -> None:
        """Release the upstream HTTP client."""
        await self.auth.aclose()

    async def run(self) -> None:
        """Run the MCP server using stdio transport."""
        try:
            await self.initialize()
            async with stdio_server() as (read_stream, write_stream):
                await self.server.run(
                    read_stream,
                    write_stream,
                    self.server.create_initialization_options(),
                )
        finally:
            await self.close()


def main(provider: str) -> None:
    """Entry point for a connector's MCP server."""
    logging.basicConfig(level=logging.INFO)
    server = ConnectorServer(load_settings(provider))
    asyncio.run(server.run())
