"""CLI interface for squad-mcp."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated, Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from squad_mcp import __version__
from squad_mcp.config import SquadConfig, configure_logging
from squad_mcp.contracts import SquadRequest
from squad_mcp.exceptions import SquadError
from squad_mcp.models import Engine, ExecutionMode, MemberStatus, StateMode
from squad_mcp.squad import SquadOrchestrator

app = typer.Typer(
    name="squad-mcp",
    help="Dispatch role-bound squad members to command-line AI agents.",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

_STATUS_STYLES = {
    MemberStatus.COMPLETED: "green",
    MemberStatus.ERROR: "red",
    MemberStatus.TIMEOUT: "yellow",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"squad-mcp version {__version__}")
        raise typer.Exit()


def _choice_callback(enum_cls: type, label: str):
    def callback(value: str | None) -> Any:
        if value is None:
            return None
        try:
            return enum_cls(value)
        except ValueError:
            valid = ", ".join(m.value for m in enum_cls)
            raise typer.BadParameter(f"Invalid {label}. Valid: {valid}") from None

    return callback


@app.callback()
def main(
    ctx: typer.Context,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit",
        ),
    ] = False,
    config_file: Annotated[
        Path | None, typer.Option("--config", "-c", help="Config file path")
    ] = None,
    state_mode: Annotated[
        str | None,
        typer.Option(
            "--state-mode",
            help="stateless or stateful",
            callback=_choice_callback(StateMode, "state mode"),
        ),
    ] = None,
    engine: Annotated[
        str | None,
        typer.Option(
            "--engine",
            "-e",
            help="cursor-agent, claude or codex",
            callback=_choice_callback(Engine, "engine"),
        ),
    ] = None,
    execution_mode: Annotated[
        str | None,
        typer.Option(
            "--execution-mode",
            help="sequential or parallel",
            callback=_choice_callback(ExecutionMode, "execution mode"),
        ),
    ] = None,
    sequential: Annotated[
        bool, typer.Option("--sequential", help="Shorthand for --execution-mode sequential")
    ] = False,
    agents_dir: Annotated[
        Path | None, typer.Option("--agents-dir", help="Directory of role .md files")
    ] = None,
    debug: Annotated[
        bool | None, typer.Option("--debug/--no-debug", help="Log every spawned command")
    ] = None,
    log_level: Annotated[
        str | None, typer.Option("--log-level", help="Log level (debug, info, warning, ...)")
    ] = None,
) -> None:
    """Load configuration shared by all commands."""
    if execution_mode is None and sequential:
        execution_mode = ExecutionMode.SEQUENTIAL
    try:
        config = SquadConfig.load(
            config_file,
            state_mode=state_mode,
            engine=engine,
            execution_mode=execution_mode,
            agents_directory_path=str(agents_dir) if agents_dir else None,
            debug=debug,
            log_level=log_level,
        )
    except (SquadError, ValidationError) as e:
        err_console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1) from None

    configure_logging(config)
    ctx.obj = {"config": config, "config_file": config_file}


def _config(ctx: typer.Context) -> SquadConfig:
    return ctx.obj["config"]


@app.command("serve")
def serve_cmd(ctx: typer.Context) -> None:
    """Run the MCP server on stdin/stdout."""
    from squad_mcp.server import SquadMcpServer

    orchestrator = SquadOrchestrator.from_config(_config(ctx))
    try:
        asyncio.run(SquadMcpServer(orchestrator).serve())
    except KeyboardInterrupt:
        raise typer.Exit(130) from None
    finally:
        orchestrator.close()


@app.command("roles")
def roles_cmd(ctx: typer.Context) -> None:
    """List the roles found in the agents directory."""
    orchestrator = SquadOrchestrator(_config(ctx))
    roles = orchestrator.roles.get_all_roles()
    if not roles:
        console.print(
            f"[yellow]No roles found in {orchestrator.roles.agents_dir}[/yellow]"
        )
        return

    table = Table(title="Roles")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Description", style="dim")
    for role in roles:
        table.add_row(role.id, role.name, role.description)
    console.print(table)


@app.command("run")
def run_cmd(
    ctx: typer.Context,
    role: Annotated[str, typer.Argument(help="Role id")],
    task: Annotated[str, typer.Argument(help="Task for the member")],
    cwd: Annotated[str | None, typer.Option("--cwd", help="Working directory")] = None,
    chat_id: Annotated[
        str | None, typer.Option("--chat-id", help="Reuse a conversation (stateful mode)")
    ] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Print the raw JSON result")] = False,
) -> None:
    """Run a single squad member and print its result."""
    config = _config(ctx)
    orchestrator = SquadOrchestrator.from_config(config)
    request = SquadRequest.single(role, task, cwd=cwd, chat_id=chat_id)

    try:
        result = asyncio.run(orchestrator.start(request))
    except SquadError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None
    finally:
        orchestrator.close()

    if as_json:
        typer.echo(result.to_json(indent=2))
    else:
        for member in result.members:
            style = _STATUS_STYLES.get(member.status, "white")
            lines = [
                f"[bold]Member:[/bold] {member.member_id}",
                f"[bold]Status:[/bold] [{style}]{member.status.value}[/{style}]",
            ]
            if member.chat_id:
                lines.append(f"[bold]Chat:[/bold] {member.chat_id}")
            console.print(Panel("\n".join(lines), title=member.role_id, border_style=style))
            if member.raw_stdout:
                console.print(member.raw_stdout, markup=False, highlight=False)
            if member.raw_stderr:
                err_console.print(member.raw_stderr, markup=False, highlight=False, style="dim")

    if not result.success:
        raise typer.Exit(1)


@app.command("squads")
def squads_cmd(
    ctx: typer.Context,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Number of squads to show")] = 20,
) -> None:
    """Show recent squads recorded by telemetry."""
    from squad_mcp.telemetry import SquadTelemetryStore

    db_path = _config(ctx).resolved_db_path()
    if not db_path.exists():
        console.print(f"[yellow]No telemetry database at {db_path}[/yellow]")
        return

    with SquadTelemetryStore(db_path) as store:
        squads = store.list_squads(limit=limit)
        if not squads:
            console.print("[dim]No squads recorded yet.[/dim]")
            return

        table = Table(title=f"Recent squads ({db_path})")
        table.add_column("Squad", style="cyan")
        table.add_column("Created")
        table.add_column("Label")
        table.add_column("Agents", justify="right")
        table.add_column("Done", justify="right", style="green")
        table.add_column("Error", justify="right", style="red")
        for squad in squads:
            agents = store.get_agents(squad.squad_id)
            done = sum(1 for a in agents if a.status == "done")
            failed = sum(1 for a in agents if a.status == "error")
            table.add_row(
                squad.squad_id[:8],
                squad.created_at[:19].replace("T", " "),
                squad.label,
                str(len(agents)),
                str(done),
                str(failed),
            )
    console.print(table)


@app.command("config")
def config_cmd(ctx: typer.Context) -> None:
    """Display the effective configuration."""
    config = _config(ctx)
    config_file = ctx.obj.get("config_file") or SquadConfig.default_path()
    source = str(config_file) if Path(config_file).expanduser().exists() else "defaults"

    orchestrator = SquadOrchestrator(config)
    mode = orchestrator.resolve_execution_mode()
    lines = [f"[bold]Source:[/bold] {source}"]
    for key, value in config.to_display_dict().items():
        lines.append(f"[bold]{key}:[/bold] {value}")
    lines.append(f"[bold]effective execution mode:[/bold] {mode.value}")
    console.print(Panel("\n".join(lines), title="squad-mcp configuration", border_style="green"))
