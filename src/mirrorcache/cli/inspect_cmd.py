"""CLI commands for inspecting and clearing a cache namespace.

Usage:
    mirrorcache --prefix users: keys
    mirrorcache --prefix users: keys "42*"
    mirrorcache --prefix users: get 42
    mirrorcache --prefix users: ttl 42
    mirrorcache --prefix users: clear --yes
"""

from __future__ import annotations

import asyncio

import orjson
import typer
from rich.console import Console

from mirrorcache.cli.common import CliOptions, open_client

console = Console()


def keys(
    ctx: typer.Context,
    pattern: str = typer.Argument("*", help="Glob pattern within the namespace"),
) -> None:
    """List keys in the namespace."""
    options: CliOptions = ctx.obj

    async def run() -> list[str]:
        async with open_client(options) as client:
            return await client.keys(pattern)

    found = asyncio.run(run())
    for key in sorted(found):
        console.print(key, highlight=False)
    console.print(f"[dim]{len(found)} key(s)[/dim]")


def get(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Key to read (without prefix)"),
) -> None:
    """Print the value stored under a key as JSON."""
    options: CliOptions = ctx.obj

    async def run() -> object:
        async with open_client(options) as client:
            return await client.get(key)

    value = asyncio.run(run())
    if value is None:
        console.print(f"[yellow]Key not found:[/yellow] {key}")
        raise typer.Exit(code=1)
    typer.echo(orjson.dumps(value, default=str, option=orjson.OPT_INDENT_2).decode())


def ttl(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Key to inspect (without prefix)"),
) -> None:
    """Print the remaining TTL of a key in seconds."""
    options: CliOptions = ctx.obj

    async def run() -> int:
        async with open_client(options) as client:
            return await client.ttl(key)

    remaining = asyncio.run(run())
    if remaining == -2:
        console.print(f"[yellow]Key not found:[/yellow] {key}")
        raise typer.Exit(code=1)
    if remaining == -1:
        typer.echo("no expiry")
    else:
        typer.echo(str(remaining))


def clear(
    ctx: typer.Context,
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Do not ask for confirmation",
    ),
) -> None:
    """Delete every key in the namespace."""
    options: CliOptions = ctx.obj
    if not yes:
        typer.confirm("Delete every key in this namespace?", abort=True)

    async def run() -> int:
        async with open_client(options) as client:
            return await client.clear()

    deleted = asyncio.run(run())
    console.print(f"[green]Deleted {deleted} key(s)[/green]")
