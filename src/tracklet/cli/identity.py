"""CLI: tracklet reset|whoami"""

import json

import click
from rich.console import Console
from rich.table import Table

from tracklet.client import AsyncTracklet
from tracklet.storage import ANONYMOUS_ID, GROUP_ID, GROUP_TRAITS, USER_ID, USER_TRAITS, FileStorage

console = Console()


def _identity_storage() -> FileStorage:
    from tracklet.cli.main import IDENTITY_FILE
    return FileStorage(IDENTITY_FILE)


def _run(coro):
    from tracklet.cli.main import _run
    return _run(coro)


@click.command("reset")
def reset_cmd():
    """Forget the stored identity and issue a new anonymous id."""

    async def _reset():
        # reset never delivers anything, so no endpoint is needed
        async with AsyncTracklet(echo_events=True, storage=_identity_storage()) as client:
            await client.reset()
            return client.user().anonymous_id

    anonymous_id = _run(_reset())
    console.print(f"[green]Identity reset.[/green] New anonymous id: {anonymous_id}")


@click.command("whoami")
@click.option("--json-output", "--json", is_flag=True)
def whoami_cmd(json_output):
    """Show the identity stored on this device."""
    storage = _identity_storage()
    identity = {
        "anonymousId": storage.get_item(ANONYMOUS_ID),
        "userId": storage.get_item(USER_ID),
        "traits": storage.get_item(USER_TRAITS),
        "groupId": storage.get_item(GROUP_ID),
        "groupTraits": storage.get_item(GROUP_TRAITS),
    }
    if json_output:
        click.echo(json.dumps(identity, indent=2))
        return
    if not identity["anonymousId"]:
        console.print("[yellow]No identity yet. Send an event first.[/yellow]")
        return
    table = Table(title="Identity")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for field, value in identity.items():
        if value is None:
            continue
        table.add_row(field, json.dumps(value) if isinstance(value, dict) else str(value))
    console.print(table)
