"""CLI for gcal-mcp: run the server and manage Google authorization."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
import httpx

from gcal_mcp.config import ConfigError, ServerConfig, load_config
from gcal_mcp.google_oauth import (
    build_auth_url,
    delete_tokens,
    exchange_authorization_code,
    load_tokens,
    revoke_token,
    save_tokens,
)
from gcal_mcp.modules.calendar.errors import CalendarAuthError
from gcal_mcp.modules.calendar.module import CalendarConfig
from gcal_mcp.server import CalendarServer, open_state_store

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("gcal-mcp.toml")

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Path to gcal-mcp.toml (or the directory containing it)",
)


def _load_or_exit(config_path: Path) -> ServerConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)


def _require_google_or_exit(config: ServerConfig) -> None:
    if not config.google.configured:
        click.echo("google.client_id and google.client_secret must be configured", err=True)
        sys.exit(1)


def _require_persistent_store_or_exit(config: ServerConfig) -> None:
    if config.storage.backend == "memory":
        click.echo(
            "storage.backend is 'memory'; tokens would be lost when this command exits. "
            "Configure storage.backend = 'postgres' to manage tokens from the CLI.",
            err=True,
        )
        sys.exit(1)


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """gcal-mcp: Google Calendar tools for AI assistants over MCP."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(name)s: %(message)s")


@cli.command()
@_config_option
def serve(config_path: Path) -> None:
    """Run the MCP server."""
    config = _load_or_exit(config_path)
    try:
        asyncio.run(CalendarServer(config).serve())
    except KeyboardInterrupt:
        click.echo("\nShutting down...", err=True)


@cli.command("check-config")
@_config_option
def check_config(config_path: Path) -> None:
    """Validate the configuration file without starting the server."""
    config = _load_or_exit(config_path)
    try:
        calendar = CalendarConfig(**config.calendar)
    except ValueError as exc:
        click.echo(f"Config error in [calendar]: {exc}", err=True)
        sys.exit(1)

    click.echo(f"Server:    {config.name} ({config.transport}, port {config.port})")
    click.echo(f"Calendar:  {calendar.calendar_id} ({calendar.timezone})")
    click.echo(f"Storage:   {config.storage.backend}")
    click.echo(f"Google:    {'configured' if config.google.configured else 'NOT configured'}")
    reminders = (
        f"every {calendar.reminders.interval_minutes}m" if calendar.reminders.enabled else "off"
    )
    click.echo(f"Reminders: {reminders}")


@cli.command("auth-url")
@_config_option
@click.option("--state", default=None, help="Opaque state value echoed back by Google")
def auth_url(config_path: Path, state: str | None) -> None:
    """Print the Google consent URL."""
    config = _load_or_exit(config_path)
    _require_google_or_exit(config)
    click.echo(
        build_auth_url(
            client_id=config.google.client_id,
            redirect_uri=config.google.redirect_uri,
            state=state,
        )
    )


@cli.command()
@_config_option
@click.option("--code", required=True, help="Authorization code from the consent redirect")
def authorize(config_path: Path, code: str) -> None:
    """Exchange an authorization code and store the resulting tokens."""
    config = _load_or_exit(config_path)
    _require_google_or_exit(config)
    _require_persistent_store_or_exit(config)
    try:
        asyncio.run(_authorize(config, code))
    except CalendarAuthError as exc:
        click.echo(f"Authorization failed: {exc}", err=True)
        sys.exit(1)
    click.echo("Authorization successful; tokens stored.")


@cli.command()
@_config_option
def revoke(config_path: Path) -> None:
    """Revoke stored tokens with Google and delete them."""
    config = _load_or_exit(config_path)
    _require_persistent_store_or_exit(config)
    try:
        revoked = asyncio.run(_revoke(config))
    except CalendarAuthError as exc:
        click.echo(f"Revocation failed: {exc}", err=True)
        sys.exit(1)
    if revoked is None:
        click.echo("No stored tokens to revoke.")
    elif revoked:
        click.echo("Tokens revoked and deleted.")
    else:
        click.echo("Google rejected the revocation; stored tokens were deleted anyway.")


async def _authorize(config: ServerConfig, code: str) -> None:
    store = await open_state_store(config.storage)
    try:
        async with httpx.AsyncClient(timeout=30.0) as http_client:
            tokens = await exchange_authorization_code(
                http_client,
                client_id=config.google.client_id,
                client_secret=config.google.client_secret,
                redirect_uri=config.google.redirect_uri,
                code=code,
            )
        if not tokens.refresh_token:
            logger.warning("Google did not return a refresh token; re-consent may be required")
        await save_tokens(store, tokens)
    finally:
        await store.close()


async def _revoke(config: ServerConfig) -> bool | None:
    store = await open_state_store(config.storage)
    try:
        tokens = await load_tokens(store)
        if tokens is None:
            return None
        async with httpx.AsyncClient(timeout=30.0) as http_client:
            revoked = await revoke_token(http_client, tokens.refresh_token or tokens.access_token)
        await delete_tokens(store)
        return revoked
    finally:
        await store.close()
