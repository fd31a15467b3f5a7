"""Command-line interface for mcp-connectors."""
