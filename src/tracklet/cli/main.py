"""
Tracklet CLI — `tracklet` command.

Commands:
  tracklet configure           Save host / write key
  tracklet page [name]         Send a page view
  tracklet track <event>       Send a custom event
  tracklet identify [user-id]  Identify the device user
  tracklet group [group-id]    Associate the user with a group
  tracklet reset               Forget the identity, issue a new anonymous id
  tracklet whoami              Show the stored identity
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

try:
    import click
    from rich.console import Console
    from rich.logging import RichHandler
except ImportError:
    raise SystemExit("CLI requires extras: pip install tracklet[cli]")

from tracklet.client import AsyncTracklet
from tracklet.errors import ConfigurationError
from tracklet.storage import FileStorage
from tracklet.version import VERSION

console = Console()
CONFIG_FILE = Path.home() / ".tracklet" / "config.json"
IDENTITY_FILE = Path.home() / ".tracklet" / "identity.json"


def _load_config() -> dict:
    try:
        return json.loads(CONFIG_FILE.read_text())
    except (FileNotFoundError, json.JSONDecodeError):
        return {}


def _save_config(cfg: dict) -> None:
    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    CONFIG_FILE.write_text(json.dumps(cfg, indent=2))


def _get_client(ctx: click.Context) -> AsyncTracklet:
    opts = ctx.obj or {}
    cfg = _load_config()
    try:
        return AsyncTracklet(
            write_key=opts.get("write_key") or cfg.get("write_key"),
            host=opts.get("host") or cfg.get("host"),
            debug=opts.get("debug", False),
            echo_events=opts.get("echo", False),
            storage=FileStorage(IDENTITY_FILE),
        )
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        console.print("[dim]Run `tracklet configure --host ...` or pass --echo.[/dim]")
        raise SystemExit(1)


def _run(coro):
    return asyncio.run(coro)


def _parse_props(pairs: tuple[str, ...]) -> dict[str, Any]:
    """key=value pairs; values are read as JSON when they parse, as text otherwise."""
    props: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got '{pair}'")
        try:
            props[key] = json.loads(raw)
        except ValueError:
            props[key] = raw
    return props


@click.group()
@click.version_option(VERSION)
@click.option("--host", envvar="TRACKLET_HOST", default=None, help="Collection endpoint base URL")
@click.option("--write-key", envvar="TRACKLET_WRITE_KEY", default=None, help="Write key (key:secret)")
@click.option("--echo", is_flag=True, help="Log events instead of sending them")
@click.option("--debug", is_flag=True, help="Verbose delivery logging")
@click.pass_context
def main(ctx: click.Context, host: Optional[str], write_key: Optional[str], echo: bool, debug: bool):
    """Tracklet CLI: send tracking events from the command line."""
    ctx.obj = {"host": host, "write_key": write_key, "echo": echo, "debug": debug}
    logger = logging.getLogger("tracklet")
    logger.setLevel(logging.DEBUG if debug else logging.WARNING)
    if not logger.handlers:
        logger.addHandler(RichHandler(console=console, show_path=False))


@main.command("configure")
@click.option("--host", "cfg_host", default=None, help="Collection endpoint base URL")
@click.option("--write-key", "cfg_write_key", default=None, help="Write key (key:secret)")
@click.option("--clear", is_flag=True, help="Forget saved settings")
def configure_cmd(cfg_host: Optional[str], cfg_write_key: Optional[str], clear: bool):
    """Save the endpoint settings used by the other commands."""
    if clear:
        _save_config({})
        console.print("[green]Settings cleared.[/green]")
        return
    cfg = _load_config()
    if cfg_host:
        cfg["host"] = cfg_host
    if cfg_write_key:
        cfg["write_key"] = cfg_write_key
    _save_config(cfg)
    console.print(f"[green]Saved[/green] host={cfg.get('host', '-')}")
    console.print("[dim]Settings saved to ~/.tracklet/config.json[/dim]")


# Register subcommands from separate modules
from tracklet.cli.events import page_cmd, track_cmd, identify_cmd, group_cmd
from tracklet.cli.identity import reset_cmd, whoami_cmd

main.add_command(page_cmd)
main.add_command(track_cmd)
main.add_command(identify_cmd)
main.add_command(group_cmd)
main.add_command(reset_cmd)
main.add_command(whoami_cmd)


if __name__ == "__main__":
    main()
