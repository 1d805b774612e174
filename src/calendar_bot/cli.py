"""CLI for calendar-bot: run the daemon, sync once, or validate configuration."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import click

from calendar_bot import __version__
from calendar_bot.config import AppConfig, ConfigError, load_config
from calendar_bot.core.logging import configure_logging

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("calendar-bot.toml")

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Path to the TOML config file",
)


def _load(config_path: Path) -> AppConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
    )
    return config


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """calendar-bot: calendar feed sync and Matrix reminders."""


@cli.command()
@_config_option
def run(config_path: Path) -> None:
    """Start the daemon and run until SIGINT/SIGTERM."""
    config = _load(config_path)
    click.echo(f"Starting calendar-bot from {config_path}")
    asyncio.run(_run_daemon(config))


@cli.command()
@_config_option
def sync(config_path: Path) -> None:
    """Sync every calendar once and print a summary."""
    config = _load(config_path)
    results = asyncio.run(_sync_once(config))
    failures = 0
    for calendar_id, result in sorted(results.items()):
        if isinstance(result, Exception):
            failures += 1
            click.echo(f"  calendar {calendar_id}: FAILED ({type(result).__name__}: {result})")
        else:
            click.echo(
                f"  calendar {calendar_id}: {result.events} events, "
                f"{result.inserted} inserted, {result.updated} updated, {result.deleted} deleted"
            )
    click.echo(f"Synced {len(results) - failures}/{len(results)} calendar(s)")
    if failures:
        sys.exit(1)


@cli.command("check-config")
@_config_option
def check_config(config_path: Path) -> None:
    """Validate the config file without connecting to anything."""
    config = _load(config_path)
    click.echo(f"Config OK: {config_path}")
    click.echo(f"  matrix: {config.matrix.homeserver_url}")
    click.echo(
        f"  sync: every {config.sync.interval_seconds}s, "
        f"{config.sync.max_concurrency} concurrent, horizon {config.sync.horizon_days}d"
    )
    click.echo(
        f"  dispatch: every {config.dispatch.tick_interval_seconds}s, "
        f"grace {config.dispatch.grace_minutes}m"
    )
    click.echo(f"  oauth2: {'enabled' if config.oauth2 else 'disabled'}")


async def _run_daemon(config: AppConfig) -> None:
    """Start the daemon and wait for a shutdown signal."""
    from calendar_bot.daemon import CalendarBotDaemon

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    daemon = CalendarBotDaemon(config)
    try:
        await daemon.start()
        await shutdown_event.wait()
    finally:
        await daemon.shutdown()


async def _sync_once(config: AppConfig) -> dict:
    from calendar_bot.daemon import CalendarBotDaemon

    daemon = CalendarBotDaemon(config)
    try:
        return await daemon.run_sync_round()
    finally:
        await daemon.shutdown()


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
