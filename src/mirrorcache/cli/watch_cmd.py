"""CLI command for watching client events.

Connects a client and logs state changes, reconnects and errors until
interrupted. Useful for checking that tracking and reconnection work against
a given Redis.

Usage:
    mirrorcache watch
    mirrorcache --url redis://cache:6379/0 watch --log-level debug
"""

from __future__ import annotations

import asyncio
import logging

import typer

from mirrorcache.cache.events import CacheEvent, CacheEventType
from mirrorcache.cli.common import CliOptions, build_client
from mirrorcache.config import settings
from mirrorcache.observability.logging import configure_logging

logger = logging.getLogger(__name__)


def _log_event(event: CacheEvent) -> None:
    if event.type == CacheEventType.ERROR:
        logger.error(f"Cache error: {event.error!r}")
    elif event.type == CacheEventType.RECONNECTING:
        logger.warning("Connection lost, reconnecting")
    elif event.state is not None:
        logger.info(f"State changed: {event.state.value}")


def watch(
    ctx: typer.Context,
    log_level: str = typer.Option(
        settings.log_level,
        "--log-level",
        "-l",
        help="Log level: debug, info, warning, error (default from MIRRORCACHE_LOG_LEVEL)",
    ),
    json_logs: bool = typer.Option(
        settings.log_json,
        "--json/--no-json",
        help="Emit JSON logs instead of console format",
    ),
) -> None:
    """Connect and log client events until interrupted."""
    options: CliOptions = ctx.obj
    configure_logging(json_format=json_logs, level=log_level)

    async def run() -> None:
        client = build_client(options)
        client.add_listener(_log_event)
        await client.connect()
        try:
            await asyncio.Event().wait()
        finally:
            await client.close()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        typer.echo("Stopped")
