"""CLI for the planner: run the MCP daemon and bootstrap Google OAuth."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

import click

from dayplanner import __version__
from dayplanner.config import ConfigError, load_config
from dayplanner.core.logging import configure_logging
from dayplanner.core.oauth import (
    DEFAULT_REDIRECT_URI,
    TokenExchangeError,
    build_authorization_url,
    exchange_code_for_tokens,
    extract_authorization_code,
)
from dayplanner.credentials import CredentialError
from dayplanner.google_credentials import KEY_CLIENT_ID, KEY_CLIENT_SECRET, KEY_REFRESH_TOKEN

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(".")

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_DIR,
    show_default=True,
    help="Directory containing dayplanner.toml",
)


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Day planner: calendar, email and task tools over MCP."""


@cli.command()
@_config_option
def run(config_path: Path) -> None:
    """Start the planner daemon from a config directory."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)

    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
        planner_name=config.name,
    )
    asyncio.run(_run_single(config_path))


@cli.command()
@_config_option
def check(config_path: Path) -> None:
    """Validate config, module settings and credentials, then list the tools."""
    from dayplanner.daemon import ModuleConfigError, PlannerDaemon

    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(name)s: %(message)s")
    daemon = PlannerDaemon(config_path)
    try:
        daemon.prepare()
        asyncio.run(daemon.build_mcp())
    except (ConfigError, ModuleConfigError, CredentialError) as exc:
        click.echo(f"FAILED: {exc}", err=True)
        sys.exit(1)

    assert daemon.config is not None
    click.echo(f"Planner {daemon.config.name} (timezone {daemon.config.timezone}) is valid")
    click.echo(f"{'Module':<12} {'Tools'}")
    click.echo("-" * 60)
    for module_name, tools in daemon.tool_names.items():
        click.echo(f"{module_name:<12} {', '.join(tools)}")


@cli.command("auth-url")
@click.option("--client-id", envvar=KEY_CLIENT_ID, required=True, help="OAuth client id")
@click.option("--redirect-uri", default=DEFAULT_REDIRECT_URI, show_default=True)
def auth_url(client_id: str, redirect_uri: str) -> None:
    """Print the Google consent URL that yields a refresh token."""
    click.echo("Open this URL in a browser and approve access:")
    click.echo("")
    click.echo(build_authorization_url(client_id, redirect_uri=redirect_uri))
    click.echo("")
    click.echo("Then run `dayplanner exchange-code` with the code (or the whole redirect URL).")


@cli.command("exchange-code")
@click.argument("code")
@click.option("--client-id", envvar=KEY_CLIENT_ID, required=True, help="OAuth client id")
@click.option(
    "--client-secret",
    envvar=KEY_CLIENT_SECRET,
    required=True,
    help="OAuth client secret",
)
@click.option("--redirect-uri", default=DEFAULT_REDIRECT_URI, show_default=True)
def exchange_code(code: str, client_id: str, client_secret: str, redirect_uri: str) -> None:
    """Exchange an authorization CODE for tokens and print the refresh token."""
    try:
        tokens = asyncio.run(
            exchange_code_for_tokens(
                code=extract_authorization_code(code),
                client_id=client_id,
                client_secret=client_secret,
                redirect_uri=redirect_uri,
            )
        )
    except TokenExchangeError as exc:
        click.echo(f"Token exchange failed: {exc}", err=True)
        sys.exit(1)

    refresh_token = tokens.get("refresh_token")
    if not refresh_token:
        click.echo(
            "No refresh token returned. Revoke the app's access and retry with a fresh consent.",
            err=True,
        )
        sys.exit(1)

    click.echo("Add this to your environment:")
    click.echo("")
    click.echo(f"{KEY_REFRESH_TOKEN}={refresh_token}")
    if os.environ.get(KEY_REFRESH_TOKEN):
        click.echo("")
        click.echo(f"Note: {KEY_REFRESH_TOKEN} is already set in this shell and must be replaced.")


async def _run_single(config_path: Path) -> None:
    """Start the daemon and serve until a signal (or stdin EOF on stdio)."""
    from dayplanner.daemon import PlannerDaemon

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Shutdown signal received")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    daemon = PlannerDaemon(config_path)
    await daemon.start()
    try:
        await daemon.serve(shutdown_event)
    finally:
        await daemon.shutdown()
