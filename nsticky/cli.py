"""
nsticky CLI

Thin client for the nsticky daemon's control socket, plus the ``daemon``
command that runs the daemon itself.

Usage:
    nsticky add <window_id> [--json]
    nsticky remove <window_id> [--json]
    nsticky list [--json]
    nsticky toggle-active [--json]
    nsticky stage (<window_id> | --all | --active | --list) [--json]
    nsticky unstage (<window_id> | --all | --active) [--json]
    nsticky status [--json]
    nsticky daemon [--config FILE]

Exit codes:
    0 - Success
    1 - Command failed (error kind and window id are printed)
    2 - Daemon not reachable
"""

import json
import socket
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import load_config
from .constants import CLIENT_TIMEOUT, CONTROL_SOCKET_ENV
from .errors import NStickyError, error_from_code


class DaemonUnreachable(RuntimeError):
    """The control socket could not be reached or answered garbage."""


class DaemonClient:
    """JSON-RPC client for daemon communication."""

    def __init__(self, socket_path: Path, timeout: float = CLIENT_TIMEOUT):
        """
        Initialize daemon client.

        Args:
            socket_path: Path to the daemon control socket
            timeout: Seconds allowed for connecting and sending the request;
                the answer itself is awaited without a limit
        """
        self.socket_path = socket_path
        self.timeout = timeout
        self.request_id = 0

    def call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Call JSON-RPC method on daemon.

        Returns:
            Method result

        Raises:
            DaemonUnreachable: If the daemon is not running or does not answer
            NStickyError: If the daemon answers with an error
        """
        self.request_id += 1
        request = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params or {},
            "id": self.request_id,
        }

        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
                sock.settimeout(self.timeout)
                sock.connect(str(self.socket_path))
                sock.sendall(json.dumps(request).encode() + b"\n")

                # The daemon bounds every niri round-trip, so a batch over
                # many windows may legitimately take longer than the timeout
                sock.settimeout(None)
                response_data = b""
                while not response_data.endswith(b"\n"):
                    chunk = sock.recv(4096)
                    if not chunk:
                        break
                    response_data += chunk

        except socket.timeout:
            raise DaemonUnreachable(
                f"Timeout connecting to daemon ({self.timeout:.0f}s). Check daemon status:\n"
                "  systemctl --user status nsticky"
            )
        except (FileNotFoundError, ConnectionRefusedError):
            raise DaemonUnreachable(
                f"Daemon not running (no socket at {self.socket_path}). Start with:\n"
                "  systemctl --user start nsticky"
            )
        except OSError as e:
            raise DaemonUnreachable(f"Cannot talk to daemon at {self.socket_path}: {e}")

        try:
            response = json.loads(response_data.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise DaemonUnreachable("Daemon closed the connection without a valid response")

        if "error" in response:
            error = response["error"]
            data = error.get("data") or {}
            raise error_from_code(
                error.get("code", 0),
                error.get("message", "Unknown error"),
                window_id=data.get("window_id"),
            )

        return response.get("result")


console = Console()
err_console = Console(stderr=True)


def _execute(
    ctx: click.Context,
    method: str,
    params: Optional[Dict[str, Any]],
    output_json: bool,
    render: Callable[[Any], None],
) -> Any:
    """Run one daemon call, print the result and exit with the right code."""
    client: DaemonClient = ctx.obj["client"]

    try:
        result = client.call(method, params)

    except DaemonUnreachable as e:
        err_console.print(f"[red]Error: {e}[/red]")
        sys.exit(2)

    except NStickyError as e:
        if output_json:
            payload = {"error": {"kind": e.kind, "message": e.message, "window_id": e.window_id}}
            click.echo(json.dumps(payload))
        else:
            where = f" (window {e.window_id})" if e.window_id is not None else ""
            err_console.print(f"[red]Error: {e.kind}{where}: {e.message}[/red]")
        sys.exit(1)

    if output_json:
        click.echo(json.dumps(result))
    else:
        render(result)
    return result


def _render_batch(verb: str, result: Dict[str, Any]) -> None:
    outcomes = result.get("outcomes", [])
    if result.get("target") == "all":
        console.print(f"{verb} {result.get('affected', 0)} window(s)")
    for outcome in outcomes:
        window_id = outcome["window_id"]
        if outcome["status"] == "ok":
            if result.get("target") != "all":
                console.print(f"{verb} window {window_id}")
        elif outcome["status"] == "skipped":
            console.print(f"[yellow]Window {window_id}: {outcome.get('message')}[/yellow]")
        else:
            console.print(
                f"[red]Window {window_id}: {outcome.get('error')}: {outcome.get('message')}[/red]"
            )


def _batch_failed(result: Dict[str, Any]) -> bool:
    return any(o["status"] == "failed" for o in result.get("outcomes", []))


def _resolve_target(window_id: Optional[int], all_: bool, active: bool) -> Any:
    chosen = [window_id is not None, all_, active]
    if sum(chosen) != 1:
        raise click.UsageError("Specify exactly one of WINDOW_ID, --all or --active")
    if all_:
        return "all"
    if active:
        return "active"
    return window_id


@click.group()
@click.version_option(__version__, prog_name="nsticky")
@click.option(
    "--socket",
    "socket_path",
    type=click.Path(path_type=Path),
    envvar=CONTROL_SOCKET_ENV,
    help="Daemon control socket (default: from config)",
)
@click.pass_context
def cli(ctx: click.Context, socket_path: Optional[Path]):
    """Manage sticky windows in niri."""
    ctx.ensure_object(dict)
    if ctx.invoked_subcommand == "daemon":
        return

    if socket_path is None:
        try:
            socket_path = load_config().control_socket
        except (ValueError, ValidationError) as e:
            err_console.print(f"[red]Invalid configuration: {e}[/red]")
            sys.exit(1)

    ctx.obj["client"] = DaemonClient(socket_path)


json_option = click.option(
    "--json", "output_json", is_flag=True, help="Output JSON instead of text"
)


@cli.command()
@click.argument("window_id", type=click.IntRange(min=0))
@json_option
@click.pass_context
def add(ctx: click.Context, window_id: int, output_json: bool):
    """Make WINDOW_ID sticky and bring it to the active workspace."""
    _execute(
        ctx, "add", {"window_id": window_id}, output_json,
        lambda r: console.print("Added" if r["added"] else "Already in sticky list"),
    )


@cli.command()
@click.argument("window_id", type=click.IntRange(min=0))
@json_option
@click.pass_context
def remove(ctx: click.Context, window_id: int, output_json: bool):
    """Stop tracking WINDOW_ID."""
    _execute(
        ctx, "remove", {"window_id": window_id}, output_json,
        lambda r: console.print("Removed" if r["removed"] else "Not in sticky list"),
    )


def _render_ids(label: str, empty: str) -> Callable[[Dict[str, Any]], None]:
    def render(result: Dict[str, Any]) -> None:
        windows = result["windows"]
        if not windows:
            console.print(empty)
        else:
            console.print(f"{label}: {', '.join(str(w) for w in windows)}")
    return render


@cli.command(name="list")
@json_option
@click.pass_context
def list_windows(ctx: click.Context, output_json: bool):
    """List sticky window ids."""
    _execute(ctx, "list", None, output_json, _render_ids("Sticky windows", "No sticky windows"))


@cli.command(name="toggle-active")
@json_option
@click.pass_context
def toggle_active(ctx: click.Context, output_json: bool):
    """Toggle stickiness of the focused window."""
    _execute(
        ctx, "toggle_active", None, output_json,
        lambda r: console.print(f"{r['result'].capitalize()} window {r['window_id']}"),
    )


@cli.command()
@click.argument("window_id", type=click.IntRange(min=0), required=False)
@click.option("--all", "all_", is_flag=True, help="Stage every sticky window")
@click.option("--active", is_flag=True, help="Stage the focused window")
@click.option("--list", "list_", is_flag=True, help="List staged windows")
@json_option
@click.pass_context
def stage(ctx: click.Context, window_id: Optional[int], all_: bool, active: bool, list_: bool, output_json: bool):
    """Park sticky windows on the stage workspace."""
    if list_:
        if window_id is not None or all_ or active:
            raise click.UsageError("--list cannot be combined with other targets")
        _execute(ctx, "stage_list", None, output_json, _render_ids("Staged windows", "No staged windows"))
        return

    target = _resolve_target(window_id, all_, active)
    result = _execute(
        ctx, "stage", {"target": target}, output_json, lambda r: _render_batch("Staged", r)
    )
    if _batch_failed(result):
        sys.exit(1)


@cli.command()
@click.argument("window_id", type=click.IntRange(min=0), required=False)
@click.option("--all", "all_", is_flag=True, help="Unstage every staged window")
@click.option("--active", is_flag=True, help="Unstage the focused window")
@json_option
@click.pass_context
def unstage(ctx: click.Context, window_id: Optional[int], all_: bool, active: bool, output_json: bool):
    """Bring staged windows back to the active workspace."""
    target = _resolve_target(window_id, all_, active)
    result = _execute(
        ctx, "unstage", {"target": target}, output_json, lambda r: _render_batch("Unstaged", r)
    )
    if _batch_failed(result):
        sys.exit(1)


def _render_status(status: Dict[str, Any]) -> None:
    table = Table(title=f"nsticky {status['version']}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    connected = "[green]connected[/green]" if status["connected"] else "[red]disconnected[/red]"
    table.add_row("niri", connected)
    table.add_row("Active workspace", str(status.get("active_workspace")))
    table.add_row("Focused window", str(status.get("focused_window")))
    table.add_row("Sticky", ", ".join(map(str, status["sticky"])) or "-")
    table.add_row("Staged", ", ".join(map(str, status["staged"])) or "-")
    table.add_row("Uptime", f"{status['uptime_seconds']:.0f}s")
    table.add_row("Events processed", str(status["events_processed"]))
    table.add_row("Commands processed", str(status["commands_processed"]))
    console.print(table)


@cli.command()
@json_option
@click.pass_context
def status(ctx: click.Context, output_json: bool):
    """Show daemon connection state and registry contents."""
    _execute(ctx, "status", None, output_json, _render_status)


@cli.command()
@click.option(
    "--config", "config_file", type=click.Path(path_type=Path, dir_okay=False),
    help="Config file (default: ~/.config/nsticky/config.json)",
)
def daemon(config_file: Optional[Path]):
    """Run the nsticky daemon in the foreground."""
    from .daemon import main as daemon_main

    daemon_main(config_file)


def main() -> None:
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
