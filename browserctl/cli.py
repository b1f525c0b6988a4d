import asyncio
import json
import os
import signal
import sys

import click
import psutil
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .client import ARITY, STATELESS_COMMANDS, ClientDispatcher
from .commands import format_result
from .config import ServerConfig
from .errors import describe_error
from .logging_config import setup_logging
from .registry import ServerRegistry, ServerStatus
from .script import STEP_COMMANDS, SessionScript
from .server import run_server

# stdout carries command results and, for `serve`, the protocol itself
console = Console(stderr=True)

PASSTHROUGH = {"ignore_unknown_options": True, "allow_interspersed_args": False}


@click.group()
@click.version_option(version=__version__, prog_name="browserctl")
@click.option("--log-level", default=None, help="Diagnostic log level. Also: BROWSERCTL_LOG_LEVEL env var")
@click.option("--log-json", is_flag=True, help="Emit diagnostics as JSON lines")
@click.pass_context
def main(ctx, log_level: str, log_json: bool):
    """browserctl - drive a headless browser from the command line."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level
    ctx.obj["log_json"] = True if log_json else None
    setup_logging(level=log_level, json_format=ctx.obj["log_json"])


def _fail(message: str):
    console.print(f"[red]Error:[/red] {escape(message)}")
    sys.exit(1)


@main.command(context_settings=PASSTHROUGH)
@click.argument("command")
@click.argument("tokens", nargs=-1, type=click.UNPROCESSED)
def run(command: str, tokens):
    """Run COMMAND against a disposable or the persistent browser.

    \b
    Stateless (given a URL): title | content | html | screenshot <url> [path]
    Stateful:  open <url> | click <sel> | type <sel> <text...> | eval <js...>
               exists <sel> | links | wait <sel> | text <sel> | get-value <sel>
               url | ping | close
    """
    if command not in ARITY:
        _fail(f"Unknown command: {command}")

    config = ServerConfig.from_env()

    async def _run():
        async with ClientDispatcher(config) as dispatcher:
            return await dispatcher.execute(command, list(tokens))

    try:
        result = asyncio.run(_run())
    except Exception as e:
        _fail(describe_error(e))
    click.echo(format_result(result))


@main.command()
@click.option("--config-json", default=None, hidden=True, help="Serialized ServerConfig from the dispatcher")
@click.option("--idle-timeout", type=int, default=None, help="Idle shutdown threshold in milliseconds")
@click.option("--headed", is_flag=True, help="Show the browser window")
@click.pass_context
def serve(ctx, config_json: str, idle_timeout: int, headed: bool):
    """Run the persistent browser server on stdin/stdout."""
    config = ServerConfig.from_dict(json.loads(config_json)) if config_json else ServerConfig.from_env()
    if idle_timeout is not None:
        config.idle_timeout_ms = idle_timeout
    if headed:
        config.browser.headless = False

    setup_logging(
        level=ctx.obj.get("log_level") or os.environ.get("BROWSERCTL_LOG_LEVEL", "INFO"),
        json_format=ctx.obj.get("log_json"),
        log_file=config.log_file_path,
    )
    sys.exit(run_server(config))


@main.command(context_settings=PASSTHROUGH)
@click.option("--headed", is_flag=True, help="Show the browser window")
@click.argument("url")
@click.argument("steps", nargs=-1, required=True, type=click.UNPROCESSED)
def session(headed: bool, url: str, steps):
    """Load URL once and run pipe-delimited STEPS against it.

    \b
    Steps: get-title | get-content | get-links | get-url
           click|<sel> | type|<sel>|<text> | eval|<js> | exists|<sel>
           wait|<sel> | text|<sel> | get-value|<sel> | screenshot|[path]
    """
    config = ServerConfig.from_env().browser
    if headed:
        config.headless = False
    sys.exit(asyncio.run(SessionScript(url, list(steps), config).run()))


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print status as JSON")
def status(as_json: bool):
    """Show whether a persistent browser server is running."""
    config = ServerConfig.from_env()
    info = ServerRegistry(config.marker_file_path, config.lock_file_path).info(config.socket_path)

    if as_json:
        click.echo(json.dumps(info.to_dict(), indent=2))
        return

    styles = {
        ServerStatus.RUNNING: "[green]Running[/green]",
        ServerStatus.STOPPED: "[dim]Stopped[/dim]",
        ServerStatus.STALE: "[yellow]Stale marker[/yellow]",
    }
    table = Table(show_header=False, box=None)
    table.add_column("Label", style="dim")
    table.add_column("Value")
    table.add_row("Status", styles[info.status])
    table.add_row("Marker file", info.marker_file or "")
    if info.pid is not None:
        table.add_row("PID", str(info.pid))
    if info.socket_path:
        table.add_row("Socket", info.socket_path)
    if info.uptime_seconds is not None:
        table.add_row("Uptime", f"{info.uptime_seconds:.0f}s")
    console.print(table)


@main.command()
@click.option("--timeout", default=10.0, help="Seconds to wait for the server to exit")
def stop(timeout: float):
    """Ask the persistent browser server to shut down."""
    config = ServerConfig.from_env()
    registry = ServerRegistry(config.marker_file_path, config.lock_file_path)
    pid = registry.live_pid()
    if pid is None:
        console.print("[dim]No browser server running[/dim]")
        return

    try:
        os.kill(pid, signal.SIGTERM)
        psutil.Process(pid).wait(timeout=timeout)
    except (ProcessLookupError, psutil.NoSuchProcess):
        pass
    except psutil.TimeoutExpired:
        _fail(f"Server pid {pid} did not exit within {timeout:.0f}s")
    console.print(f"[green]✓[/green] Browser server (pid {pid}) stopped")


@main.command()
def commands():
    """List dispatcher commands and session steps."""
    table = Table(title="browserctl commands")
    table.add_column("Command", style="cyan")
    table.add_column("Arguments")
    table.add_column("Route")
    for name, arity in ARITY.items():
        params = [f"<{p}>" for p in arity.required] + [f"[{p}]" for p in arity.optional]
        if arity.greedy and params:
            params[-1] += "..."
        route = "stateless with URL" if name in STATELESS_COMMANDS else "stateful"
        table.add_row(name, " ".join(params), route)
    console.print(table)
    console.print(f"[dim]Session steps:[/dim] {', '.join(STEP_COMMANDS)}")


if __name__ == "__main__":
    main()
