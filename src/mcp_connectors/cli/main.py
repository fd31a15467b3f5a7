"""Command-line interface for mcp-connectors."""

import asyncio
import logging
import sys
from typing import TYPE_CHECKING

import click

from mcp_connectors.__version__ import __version__
from mcp_connectors.config import PROVIDER_DEFAULTS

if TYPE_CHECKING:
    from mcp_connectors.auth import AuthenticatedClientFactory, CredentialRecord

PROVIDER_CHOICE = click.Choice(sorted(PROVIDER_DEFAULTS))


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """MCP connectors - Authenticated MCP servers for upstream APIs.

    One server per provider:
    - gcal (Google Calendar)
    - gmail (Gmail)
    - gdrive (Google Drive)
    - slack (Slack, user token)
    - console (Console backend, session cookie)
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)


@main.command()
def providers() -> None:
    """List supported providers and their callback URLs."""
    from mcp_connectors.config import load_settings

    for name in sorted(PROVIDER_DEFAULTS):
        settings = load_settings(name)
        click.echo(f"{name:<8} {settings.redirect_uri}  ({settings.token_path})")


@main.command()
@click.argument("provider", type=PROVIDER_CHOICE)
@click.option("--force", is_flag=True, help="Sign in again even if a valid token is stored")
def login(provider: str, force: bool) -> None:
    """Sign in to PROVIDER in the browser and store the credential.

    This will:
    1. Start a local callback listener
    2. Open the browser for consent
    3. Store the credential at ~/.mcp-connectors/<provider>-token.json
    """
    from mcp_connectors.auth import AuthError, TokenStatus, build_auth_state
    from mcp_connectors.config import load_settings

    try:
        settings = load_settings(provider)
        auth = build_auth_state(
            settings,
            coordinator_kwargs={
                "on_consent_url": lambda url: click.echo(
                    f"If the browser doesn't open, visit:\n  {url}\n"
                )
            },
        )
    except AuthError as e:
        click.echo(f"❌ Error: {e}")
        sys.exit(1)

    if not force and auth.store.get_status() == TokenStatus.VALID:
        record = auth.store.load()
        click.echo("✓ Already authenticated!")
        if record is not None and record.email:
            click.echo(f"Signed in as: {record.email}")
        click.echo(f"Token stored at: {auth.store.token_path}")
        click.echo("Use --force to sign in again.")
        return

    click.echo(f"Starting {auth.provider.title} authentication...")
    click.echo(f"Waiting for the redirect on {settings.redirect_uri}")
    click.echo("")

    try:
        if force:
            record = asyncio.run(_force_login(auth))
        else:
            record = asyncio.run(auth.coordinator.run_interactive_login())
    except AuthError as e:
        click.echo(f"❌ Authentication failed: {e}")
        sys.exit(1)

    click.echo("✓ Authentication successful!")
    if record.email:
        click.echo(f"Signed in as: {record.email}")
    click.echo(f"Token stored at: {auth.store.token_path}")


async def _force_login(auth: "AuthenticatedClientFactory") -> "CredentialRecord":
    try:
        return await auth.force_reauthenticate()
    finally:
        await auth.aclose()


@main.command()
@click.argument("provider", type=PROVIDER_CHOICE)
def logout(provider: str) -> None:
    """Delete the stored PROVIDER credential."""
    from mcp_connectors.auth import CredentialStore
    from mcp_connectors.config import load_settings

    store = CredentialStore(load_settings(provider).token_path)
    if store.clear():
        click.echo(f"✓ Logged out of {provider}")
    else:
        click.echo(f"No stored credential for {provider}")


@main.command()
@click.argument("provider", type=PROVIDER_CHOICE, required=False)
def status(provider: str | None) -> None:
    """Show stored credential status for one or all providers."""
    from mcp_connectors.auth import CredentialStore, TokenStatus
    from mcp_connectors.config import load_settings

    names = [provider] if provider else sorted(PROVIDER_DEFAULTS)
    missing = 0

    for name in names:
        store = CredentialStore(load_settings(name).token_path)
        token_status = store.get_status()
        record = store.load(allow_expired=True)

        click.echo(f"{name}:")
        click.echo(f"  Token file: {store.token_path}")
        if token_status == TokenStatus.MISSING:
            click.echo("  ❌ Not authenticated")
            missing += 1
        elif token_status == TokenStatus.INVALID:
            click.echo("  ❌ Token file corrupted")
            missing += 1
        elif token_status == TokenStatus.EXPIRED:
            refreshable = record is not None and record.refresh_token is not None
            click.echo(
                "  ⚠️  Token expired (will refresh on use)"
                if refreshable
                else "  ⚠️  Token expired (sign in again)"
            )
        else:
            click.echo("  ✓ Authenticated")

        if record is not None:
            if record.email:
                click.echo(f"  Account: {record.email}")
            if record.expires_at:
                click.echo(f"  Expires: {record.expires_at.strftime('%Y-%m-%d %H:%M:%S UTC')}")
        click.echo("")

    if provider and missing:
        click.echo(f"Run 'mcp-connectors login {provider}' to authenticate.")
        sys.exit(1)


@main.command()
@click.argument("provider", type=PROVIDER_CHOICE)
def serve(provider: str) -> None:
    """Start the stdio MCP server for PROVIDER.

    Stored credentials are picked up at startup. Without them the browser
    sign-in starts on the first tool call (unless <PREFIX>_AUTO_POPUP is off).

    This command is typically invoked by an MCP client.
    """
    from mcp_connectors.auth import AuthError
    from mcp_connectors.server import main as server_main

    try:
        click.echo(f"Starting {provider} MCP server...", err=True)
        server_main(provider)
    except KeyboardInterrupt:
        click.echo("\nServer stopped.", err=True)
    except AuthError as e:
        click.echo(f"❌ Configuration error: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
