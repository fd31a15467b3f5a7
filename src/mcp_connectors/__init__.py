"""MCP connectors: adapter servers for Google Calendar, Gmail, Drive, Slack and Console."""

from mcp_connectors.__version__ import __version__

__all__ = ["__version__"]
