"""Typer-powered command line for ``mysql-sandbox``.

The CLI is a thin shell over :class:`~mysql_sandbox.server.MySqlServer`. It is
mostly useful to start a server by hand for exploratory work and to reap
servers left running by crashed test sessions.
"""
from __future__ import annotations

import json
import textwrap
from dataclasses import dataclass, replace
from pathlib import Path
from typing import NoReturn

import psutil
import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import ConfigError, SandboxConfig, load_config
from .directories import CleanupTimeoutError
from .exit_codes import ExitCode
from .logging import StructuredLogger
from .providers import LaunchError, ProcessKillError
from .readiness import StartupTimeoutError
from .server import MySqlServer
from .state import InstanceRegistry, RegistryIOError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to mysql-sandbox's YAML config file.",
)

PORT_OPTION = typer.Option(
    None,
    "--port",
    "-p",
    min=1,
    max=65535,
    help="Port for the server (defaults to the configured port).",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

PROVIDER_ERRORS = (LaunchError, StartupTimeoutError, ProcessKillError)
ENVIRONMENT_ERRORS = (CleanupTimeoutError, RegistryIOError)
HANDLED_ERRORS = PROVIDER_ERRORS + ENVIRONMENT_ERRORS

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Throwaway MySQL server supervisor.

        Starts an isolated mysqld instance in a scratch directory, waits until
        it accepts connections, and reaps instances left behind by crashed runs.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: SandboxConfig
    logger: StructuredLogger
    registry: InstanceRegistry

    def server(self) -> MySqlServer:
        """Return a server facade bound to this runtime."""
        return MySqlServer(self.config, logger=self.logger)


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        registry=InstanceRegistry(config.registry_file),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


def _fail(message: str, *, rc: ExitCode) -> NoReturn:
    console.print(f"[red]{message}[/red]")
    raise typer.Exit(code=int(rc))


def _fail_from(exc: Exception) -> NoReturn:
    if isinstance(exc, ENVIRONMENT_ERRORS):
        _fail(str(exc), rc=ExitCode.ENVIRONMENT)
    _fail(str(exc), rc=ExitCode.PROVIDER)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the mysql-sandbox version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"mysql-sandbox {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


@app.command()
def start(ctx: typer.Context, port: int | None = PORT_OPTION) -> None:
    """Start a server and leave it running until ``mysql-sandbox stop``."""
    runtime = _get_runtime(ctx)
    server = runtime.server()
    try:
        server.start(port)
    except HANDLED_ERRORS as exc:
        _fail_from(exc)

    console.print(f"[green]Server running as process {server.process_id}.[/green]")
    console.print(f"Data directory: {server.data_dir}")
    console.print(server.connection_string(), soft_wrap=True)


@app.command()
def stop(ctx: typer.Context) -> None:
    """Kill every sandboxed server and remove the scratch directories."""
    runtime = _get_runtime(ctx)
    try:
        result = runtime.server().kill_previous_instances()
    except HANDLED_ERRORS as exc:
        _fail_from(exc)

    if result.killed:
        joined = ", ".join(str(pid) for pid in result.killed)
        console.print(f"[green]Killed server processes: {joined}.[/green]")
    else:
        console.print("No running server processes found.")
    for failure in result.failures:
        console.print(f"[yellow]{failure}[/yellow]")


@app.command()
def status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the processes recorded in the registry file."""
    runtime = _get_runtime(ctx)
    entries = [_describe_pid(pid) for pid in runtime.registry.read_orphans()]

    if json_output:
        console.print_json(
            data={"registry_file": str(runtime.registry.path), "processes": entries}
        )
        return

    if not entries:
        console.print(f"No processes recorded in {runtime.registry.path}.")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("PID", style="bold")
    table.add_column("Alive")
    table.add_column("Name")
    for entry in entries:
        table.add_row(str(entry["pid"]), "yes" if entry["alive"] else "no", entry["name"] or "-")
    console.print(table)


@app.command("connection-string")
def connection_string(
    ctx: typer.Context,
    port: int | None = PORT_OPTION,
    database: str | None = typer.Option(
        None,
        "--database",
        "-d",
        help="Database name to include in the connection string.",
    ),
) -> None:
    """Print the connection string clients should use."""
    runtime = _get_runtime(ctx)
    config = runtime.config if port is None else replace(runtime.config, port=port)
    server = MySqlServer(config, logger=runtime.logger)
    console.print(server.connection_string(database), soft_wrap=True)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    if json_output:
        console.print_json(data=data)
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for key, value in data.items():
        if isinstance(value, (dict, list)):
            rendered = json.dumps(value, indent=2, sort_keys=True)
        else:
            rendered = str(value)
        table.add_row(key, rendered)
    console.print(table)


def _describe_pid(pid: int) -> dict[str, object]:
    name: str | None = None
    alive = psutil.pid_exists(pid)
    if alive:
        try:
            name = psutil.Process(pid).name()
        except psutil.Error:
            name = None
    return {"pid": pid, "alive": alive, "name": name}


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
