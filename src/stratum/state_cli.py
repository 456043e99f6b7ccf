"""CLI commands for inspecting and editing state."""

from __future__ import annotations

import asyncio
import json
import sys

import click

from .engine import Engine
from .exceptions import StratumError
from .formatting import TableRenderer
from .settings import RunOptions


def _engine(ctx: click.Context) -> Engine:
    return Engine.for_state(ctx.obj["chdir"], RunOptions.from_env())


def _fail(error: StratumError) -> None:
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


@click.group()
def state() -> None:
    """Inspect and edit the state document.

    State records are only changed by apply; use these commands to look at
    them, or to forget a resource without destroying it.
    """


@state.command("list")
@click.pass_context
def state_list(ctx: click.Context) -> None:
    """List resources recorded in state."""
    try:
        document = _engine(ctx).load_state()
    except StratumError as e:
        _fail(e)
        return

    if not document.records and not document.deposed:
        click.echo("No resources in state.")
        return

    rows = [
        [address, record.resource_type, record.provider, record.identifier]
        for address, record in sorted(document.records.items())
    ]
    rows += [
        [f"{record.address} (deposed)", record.resource_type, record.provider, record.identifier]
        for record in sorted(document.deposed, key=lambda r: (r.address, r.identifier))
    ]
    click.echo(TableRenderer().render(["Address", "Type", "Provider", "Identifier"], rows))
    click.echo(f"\nSerial: {document.serial}  Lineage: {document.lineage}")


@state.command("show")
@click.argument("address")
@click.pass_context
def state_show(ctx: click.Context, address: str) -> None:
    """Show one state record as JSON."""
    try:
        record = _engine(ctx).show(address)
    except StratumError as e:
        _fail(e)
        return
    click.echo(json.dumps(record.to_dict(), indent=2, sort_keys=True))


@state.command("rm")
@click.argument("addresses", nargs=-1, required=True)
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
def state_rm(ctx: click.Context, addresses: tuple[str, ...], yes: bool) -> None:
    """Forget resources without destroying them."""
    if not yes:
        click.confirm(
            f"Remove {len(addresses)} record(s) from state? Remote objects are kept.",
            abort=True,
        )
    try:
        removed = asyncio.run(_engine(ctx).remove(list(addresses)))
    except StratumError as e:
        _fail(e)
        return
    for address in removed:
        click.echo(f"✓ Removed {address}")
