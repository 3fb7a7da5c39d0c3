"""Thin CLI wrapper over :class:`felicity.Client` and the read server."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from pathlib import Path

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.syntax import Syntax

from felicity._constants import DEFAULT_HOST, DEFAULT_POLL_INTERVAL, DEFAULT_PORT, TOKEN_FILE
from felicity.client import Client
from felicity.exceptions import FelicityError
from felicity.server import serve as serve_cache
from felicity.snapshot import BatterySnapshot, derive_entry

app = typer.Typer(help="Poll Felicity Solar battery packs.", invoke_without_command=True)

_USERNAME = typer.Option(..., envvar="FELICITY_USERNAME", help="Felicity account email")
_PASSWORD = typer.Option(
    ..., envvar="FELICITY_PASSWORD", hide_input=True, help="Felicity account password"
)
_TOKEN_FILE = typer.Option(
    TOKEN_FILE, envvar="FELICITY_TOKEN_FILE", help="Where session tokens are kept"
)


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Poll Felicity Solar battery packs."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(0)


def _print_json(obj: object) -> None:
    """Print JSON, syntax-highlighted when stdout is a TTY and compact otherwise."""
    if sys.stdout.isatty():
        Console().print(Syntax(json.dumps(obj, indent=2), "json"))
    else:
        typer.echo(json.dumps(obj))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def serve(
    username: str = _USERNAME,
    password: str = _PASSWORD,
    host: str = typer.Option(DEFAULT_HOST, envvar="FELICITY_HOST", help="Listen address"),
    port: int = typer.Option(DEFAULT_PORT, envvar="FELICITY_PORT", help="Listen port"),
    interval: float = typer.Option(
        DEFAULT_POLL_INTERVAL, envvar="FELICITY_INTERVAL", help="Seconds between polls", min=1
    ),
    token_file: Path = _TOKEN_FILE,
) -> None:
    """Poll all devices and serve the latest data as JSON over HTTP."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(
            serve_cache(
                username,
                password,
                host=host,
                port=port,
                interval=interval,
                token_file=token_file,
            )
        )


@app.command()
def devices(
    username: str = _USERNAME,
    password: str = _PASSWORD,
    token_file: Path = _TOKEN_FILE,
) -> None:
    """List the serial numbers of all devices on the account."""
    client = Client.from_credentials(username, password, token_file=token_file)
    try:
        sns = asyncio.run(client.refresh_devices())
    except FelicityError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None

    if not sns:
        typer.echo("No devices found.", err=True)
        raise typer.Exit(1)
    for i, sn in enumerate(sns):
        typer.echo(f"  [{i}] {sn}")


@app.command()
def snapshot(
    device_sn: str = typer.Argument(..., help="Device serial number"),
    username: str = _USERNAME,
    password: str = _PASSWORD,
    token_file: Path = _TOKEN_FILE,
    as_json: bool = typer.Option(False, "--json", "-j", help="Print the raw API payload"),
) -> None:
    """Fetch one battery pack's current snapshot."""
    client = Client.from_credentials(username, password, token_file=token_file)
    try:
        result = asyncio.run(_snapshot_async(client, device_sn))
    except FelicityError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None

    if as_json:
        _print_json(dict(result.raw))
    else:
        _print_json(derive_entry(device_sn, result).to_dict())


async def _snapshot_async(client: Client, device_sn: str) -> BatterySnapshot:
    await client.sessions.ensure_valid()
    return await client.fetch_snapshot(device_sn)


def run() -> None:
    """Console entry point: load ``.env`` from the working directory, then dispatch."""
    load_dotenv()
    app()
