"""CLI commands for mirrorcache.

Provides command-line interface using Typer:
- mirrorcache keys: List keys in a namespace
- mirrorcache get: Print a cached value
- mirrorcache ttl: Print the remaining TTL of a key
- mirrorcache clear: Delete every key in a namespace
- mirrorcache watch: Log client events (connection, invalidation errors)

Usage:
    mirrorcache --help
    mirrorcache --prefix users: keys
    mirrorcache --url redis://localhost:6379/1 watch
"""

from __future__ import annotations

import typer

from mirrorcache.cli.common import CliOptions
from mirrorcache.cli.inspect_cmd import clear, get, keys, ttl
from mirrorcache.cli.watch_cmd import watch

# Main CLI application
app = typer.Typer(
    name="mirrorcache",
    help="mirrorcache: inspect and watch a Redis-backed mirrored cache",
    no_args_is_help=True,
)

app.command("keys")(keys)
app.command("get")(get)
app.command("ttl")(ttl)
app.command("clear")(clear)
app.command("watch")(watch)


@app.callback()
def callback(
    ctx: typer.Context,
    url: str | None = typer.Option(
        None,
        "--url",
        "-u",
        help="Redis URL (defaults to MIRRORCACHE_REDIS_URL / REDIS_URL)",
    ),
    prefix: str | None = typer.Option(
        None,
        "--prefix",
        "-p",
        help="Key prefix of the namespace",
    ),
    serializer: str | None = typer.Option(
        None,
        "--serializer",
        "-s",
        help="Value serializer: msgpack, json, pickle",
    ),
) -> None:
    """mirrorcache: inspect and watch a Redis-backed mirrored cache."""
    ctx.obj = CliOptions(url=url, prefix=prefix, serializer=serializer)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
