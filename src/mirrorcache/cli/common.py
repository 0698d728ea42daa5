"""Shared helpers for CLI commands."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import typer

from mirrorcache.cache.client import CacheClient
from mirrorcache.cache.serializers import create_serializer

# Seconds to wait for the first connection before giving up
CONNECT_TIMEOUT = 5.0


@dataclass
class CliOptions:
    """Global options given before the subcommand."""

    url: str | None = None
    prefix: str | None = None
    serializer: str | None = None


def build_client(options: CliOptions) -> CacheClient:
    """Create a cache client from CLI options over environment settings."""
    overrides: dict[str, object] = {"health_check_interval": 0}
    if options.url:
        overrides["store_url"] = options.url
    if options.prefix:
        overrides["key_prefix"] = options.prefix
    if options.serializer:
        overrides["serializer"] = create_serializer(options.serializer)
    return CacheClient.from_settings(**overrides)


@asynccontextmanager
async def open_client(
    options: CliOptions, timeout: float = CONNECT_TIMEOUT
) -> AsyncIterator[CacheClient]:
    """Connect a client for the duration of one command.

    Exits with status 1 if Redis cannot be reached within ``timeout``.
    """
    client = build_client(options)
    await client.connect()
    try:
        if not await client.wait_until_ready(timeout):
            typer.echo(f"Could not connect to Redis within {timeout:.0f}s", err=True)
            raise typer.Exit(code=1)
        yield client
    finally:
        await client.close()
