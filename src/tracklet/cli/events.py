"""CLI: tracklet page|track|identify|group"""

import json
from typing import Any, Optional

import click
from rich.console import Console

console = Console()


def _get_client(ctx):
    from tracklet.cli.main import _get_client
    return _get_client(ctx)


def _run(coro):
    from tracklet.cli.main import _run
    return _run(coro)


def _parse_props(pairs):
    from tracklet.cli.main import _parse_props
    return _parse_props(pairs)


def _send(ctx: click.Context, call: str, *args: Any) -> Optional[dict[str, Any]]:
    client = _get_client(ctx)

    async def _go():
        async with client:
            return await getattr(client, call)(*args)

    return _run(_go())


def _report(envelope: Optional[dict[str, Any]], json_output: bool) -> None:
    if envelope is None:
        console.print("[yellow]Event was not delivered. Re-run with --debug for details.[/yellow]")
        raise SystemExit(1)
    if json_output:
        click.echo(json.dumps(envelope, indent=2))
        return
    label = envelope.get("event") or envelope.get("type")
    console.print(f"[green]Sent[/green] {label} [dim]({envelope.get('messageId')})[/dim]")


json_option = click.option("--json-output", "--json", is_flag=True, help="Print the delivered envelope")


@click.command("page")
@click.argument("name", required=False)
@click.option("--url", default=None, help="Page URL (drives path, host and UTM campaign)")
@click.option("-p", "--prop", "props", multiple=True, help="Property as key=value (repeatable)")
@json_option
@click.pass_context
def page_cmd(ctx, name, url, props, json_output):
    """Send a page view."""
    properties = _parse_props(props)
    if url:
        properties["url"] = url
    _report(_send(ctx, "page", name, properties), json_output)


@click.command("track")
@click.argument("event")
@click.option("-p", "--prop", "props", multiple=True, help="Property as key=value (repeatable)")
@json_option
@click.pass_context
def track_cmd(ctx, event, props, json_output):
    """Send a custom event."""
    _report(_send(ctx, "track", event, _parse_props(props)), json_output)


@click.command("identify")
@click.argument("user_id", required=False)
@click.option("-t", "--trait", "traits", multiple=True, help="Trait as key=value (repeatable)")
@json_option
@click.pass_context
def identify_cmd(ctx, user_id, traits, json_output):
    """Identify the user of this device."""
    parsed = _parse_props(traits)
    if not user_id and not parsed:
        raise click.UsageError("identify needs a user id or at least one --trait")
    _report(_send(ctx, "identify", user_id, parsed), json_output)


@click.command("group")
@click.argument("group_id", required=False)
@click.option("-t", "--trait", "traits", multiple=True, help="Group trait as key=value (repeatable)")
@json_option
@click.pass_context
def group_cmd(ctx, group_id, traits, json_output):
    """Associate the user with a group."""
    _report(_send(ctx, "group", group_id, _parse_props(traits)), json_output)
