"""
Gantz CLI - run a tool host, inspect tool files, try calls locally.

Run `gantz run` in a directory with a gantz.yaml to expose its tools.
"""

import json
import logging
import sys
import threading
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from gantz import __version__
from gantz.errors import ConfigError, ParseError
from gantz.relay.loopback import LoopbackRelay
from gantz.relay.transport import HttpRelayChannel
from gantz.service import Tunnel
from gantz.tools.registry import ToolRegistry, ToolSource
from gantz.validation.config import Config

console = Console()
err_console = Console(stderr=True)


def setup_logging(level: str) -> None:
    """Route all gantz logging through Rich on stderr."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _fail(message: str, code: int = 1) -> None:
    err_console.print(f"[red]Error: {escape(message)}[/red]")
    sys.exit(code)


def _load_source(path: str) -> ToolSource:
    try:
        return ToolSource(Path(path))
    except ParseError as exc:
        _fail(f"{path}: {exc}")


def _parse_args(pairs: Tuple[str, ...], json_args: Optional[str]) -> dict:
    arguments = {}
    if json_args:
        try:
            arguments = json.loads(json_args)
        except ValueError as exc:
            _fail(f"--json is not valid JSON: {exc}")
        if not isinstance(arguments, dict):
            _fail("--json must be a JSON object")
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            _fail(f"expected name=value, got {pair!r}")
        arguments[name] = value
    return arguments


def _print_endpoint(tunnel: Tunnel) -> None:
    lines = [
        f"[cyan]Endpoint:[/cyan] {tunnel.endpoint_id}",
        f"[cyan]URL:[/cyan] {tunnel.public_url or '(waiting for relay)'}",
        f"[cyan]Tools:[/cyan] {', '.join(tunnel.registry.names()) or '(none)'}",
    ]
    if tunnel.token:
        lines.append(f"[cyan]Token:[/cyan] {tunnel.token}")
    else:
        lines.append("[yellow]No token: anyone with the URL can call these tools[/yellow]")
    lines.append("")
    lines.append("[dim]Ctrl+C to stop[/dim]")
    console.print(Panel("\n".join(lines), title="Gantz tunnel", border_style="blue", padding=(1, 2)))


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="Show version")
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
@click.pass_context
def cli(ctx: click.Context, version: bool, log_level: Optional[str]) -> None:
    """
    Gantz - expose local tools to remote LLM clients.

    \b
    Examples:
        gantz run                         # serve ./gantz.yaml through the relay
        gantz tools                       # list the tools a caller would see
        gantz call echo_back -a text=hi   # run one call locally
    """
    if version:
        console.print(f"Gantz v{__version__}")
        ctx.exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        ctx.exit()

    try:
        config = Config.load()
        level = log_level or config.merged.logging.level
    except ConfigError as exc:
        _fail(str(exc))
    setup_logging(level)
    ctx.obj = config


@cli.command()
@click.option("--tools", "-t", "tools_file", default=None, help="Tool-definition file")
@click.option("--relay-url", default=None, help="Relay base URL")
@click.option("--auth/--no-auth", default=None, help="Require a bearer token")
@click.option("--token", default=None, help="Use this token instead of a generated one")
@click.option("--watch/--no-watch", default=None, help="Reload the tool file when it changes")
@click.pass_obj
def run(
    config: Config,
    tools_file: Optional[str],
    relay_url: Optional[str],
    auth: Optional[bool],
    token: Optional[str],
    watch: Optional[bool],
) -> None:
    """Serve the tools through the public relay until interrupted."""
    config.override(relay={"url": relay_url}, tools={"file": tools_file, "watch": watch})
    try:
        settings = config.merged
    except ConfigError as exc:
        _fail(str(exc))

    source = _load_source(settings.tools.file)
    channel = HttpRelayChannel(settings.relay.url, api_key=settings.relay.api_key)
    tunnel = Tunnel(source, settings, channel)

    tunnel.start(auth=auth, token=token, wait=10)
    _print_endpoint(tunnel)
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        console.print("\n[dim]Stopping...[/dim]")
    finally:
        tunnel.stop()


@cli.command()
@click.option("--tools", "-t", "tools_file", default=None, help="Tool-definition file")
@click.pass_obj
def tools(config: Config, tools_file: Optional[str]) -> None:
    """List the tools a remote caller would discover."""
    path = tools_file or config.merged.tools.file
    registry = _load_source(path).current

    table = Table(show_header=True, header_style="bold", title=registry.name or None)
    table.add_column("Tool", style="cyan")
    table.add_column("Description")
    table.add_column("Parameters", style="dim")
    for tool in registry.describe():
        params = ", ".join(
            f"{p.name}: {p.type.value}{' (required)' if p.required else ''}"
            for p in tool.parameters
        )
        table.add_row(tool.name, tool.description, params or "(none)")
    console.print(table)


@cli.command()
@click.argument("file", type=click.Path(dir_okay=False))
def validate(file: str) -> None:
    """Check a tool-definition file without running anything."""
    try:
        registry = ToolRegistry.load_file(Path(file))
    except ParseError as exc:
        _fail(f"{file}: {exc}")
    console.print(f"[green]✓[/green] {file}: {len(registry)} tool(s) OK")


@cli.command()
@click.argument("tool")
@click.option("--arg", "-a", "pairs", multiple=True, help="Argument as name=value (repeatable)")
@click.option("--json", "json_args", default=None, help="Arguments as a JSON object")
@click.option("--tools", "-t", "tools_file", default=None, help="Tool-definition file")
@click.option("--timeout", type=float, default=None, help="Seconds before the call is stopped")
@click.option("--raw", is_flag=True, help="Print the wire response as JSON")
@click.pass_obj
def call(
    config: Config,
    tool: str,
    pairs: Tuple[str, ...],
    json_args: Optional[str],
    tools_file: Optional[str],
    timeout: Optional[float],
    raw: bool,
) -> None:
    """Run one call through a local, in-process relay."""
    settings = config.merged
    source = _load_source(tools_file or settings.tools.file)
    arguments = _parse_args(pairs, json_args)

    relay = LoopbackRelay(public_base="local://")
    tunnel = Tunnel(source, settings, relay.channel())
    tunnel.start(auth=False, wait=5)

    message = {"type": "call", "id": "cli-1", "tool": tool, "arguments": arguments}
    if timeout is not None:
        message["timeout"] = timeout
    budget = (timeout or settings.executor.max_timeout) + settings.executor.sweep_grace + 5
    try:
        response = relay.request(tunnel.endpoint_id, message, timeout=budget)
    finally:
        tunnel.stop()

    if response is None:
        _fail("no response from tool host")
    if raw:
        click.echo(json.dumps(response, indent=2))
        return

    payload = response.get("payload") or {}
    if payload.get("stdout"):
        click.echo(payload["stdout"], nl=False)
    if response["outcome"] != "ok":
        if payload.get("stderr"):
            click.echo(payload["stderr"], nl=False, err=True)
        _fail(f"[{response['error']['code']}] {response['error']['message']}")


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
