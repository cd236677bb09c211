"""Main CLI entry point for Agentos.

Usage:
    agentos serve --port 3011
    agentos recover
    agentos sessions --status ready
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from agentos.config import AgentosConfig, load_config
from agentos.database.connection import get_engine, get_session_factory, init_db
from agentos.database.models.session import LifecycleStatus, Session
from agentos.database.queries.session import list_sessions
from agentos.logging import setup_logging
from agentos.orchestrator.recovery import RecoveryStats, SessionRecovery

app = typer.Typer(
    name="agentos",
    help="Agentos: session orchestration for AI coding agents",
    no_args_is_help=True,
)

console = Console()

# Global config holder, set by the callback
_config: AgentosConfig | None = None


def get_config() -> AgentosConfig:
    """Return the configuration loaded by the CLI callback.

    Raises:
        RuntimeError: If the callback has not run
    """
    if _config is None:
        raise RuntimeError("Configuration not loaded. Run through the agentos CLI.")
    return _config


@app.command()
def serve(
    host: Annotated[
        Optional[str],
        typer.Option("--host", "-h", help="Host to bind to (default from config)"),
    ] = None,
    port: Annotated[
        Optional[int],
        typer.Option("--port", "-p", help="Port to bind to (default from config)"),
    ] = None,
    reload: Annotated[
        bool,
        typer.Option("--reload", "-r", help="Enable auto-reload (development)"),
    ] = False,
) -> None:
    """Start the Agentos API server.

    Startup runs recovery before the first request is served.
    """
    import uvicorn

    from agentos.web.app import create_app

    config = get_config()
    bind_host = host or config.web.host
    bind_port = port or config.web.port

    console.print("[bold cyan]Starting Agentos[/bold cyan]")
    console.print(f"[dim]Host:[/dim] {bind_host}")
    console.print(f"[dim]Port:[/dim] {bind_port}")
    console.print(f"[dim]Sandbox mode:[/dim] {config.sandbox.mode}")
    console.print()

    uvicorn.run(
        create_app(config),
        host=bind_host,
        port=bind_port,
        reload=reload,
        log_level="info",
    )


async def _run_recovery(config: AgentosConfig) -> RecoveryStats:
    from agentos.web.app import build_service

    engine = get_engine(config.database)
    try:
        await init_db(engine)
        service = build_service(config, get_session_factory(engine))
        return await SessionRecovery(service).recover()
    finally:
        await engine.dispose()


@app.command()
def recover() -> None:
    """Reconcile stored sessions with running processes and containers."""
    try:
        stats = asyncio.run(_run_recovery(get_config()))
    except Exception as e:
        console.print(f"[red]Recovery failed:[/red] {e}")
        raise typer.Exit(code=1) from e

    table = Table(title="Recovery")
    table.add_column("Check", style="bold")
    table.add_column("Sessions", justify="right")
    for key, value in stats.model_dump().items():
        table.add_row(key.replace("_", " "), str(value))
    console.print(table)


async def _list_sessions(
    config: AgentosConfig, status: LifecycleStatus | None
) -> list[Session]:
    engine = get_engine(config.database)
    try:
        await init_db(engine)
        async with get_session_factory(engine)() as db:
            return await list_sessions(db, lifecycle_filter=[status] if status else None)
    finally:
        await engine.dispose()


_STATUS_STYLES = {
    LifecycleStatus.creating: "yellow",
    LifecycleStatus.ready: "green",
    LifecycleStatus.failed: "red",
    LifecycleStatus.deleting: "dim",
}


@app.command()
def sessions(
    status: Annotated[
        Optional[LifecycleStatus],
        typer.Option("--status", "-s", help="Filter by lifecycle status"),
    ] = None,
) -> None:
    """List sessions."""
    try:
        rows = asyncio.run(_list_sessions(get_config(), status))
    except Exception as e:
        console.print(f"[red]Error listing sessions:[/red] {e}")
        raise typer.Exit(code=1) from e

    if not rows:
        console.print("[yellow]No sessions found[/yellow]")
        return

    table = Table(title="Sessions")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name", style="bold")
    table.add_column("Lifecycle")
    table.add_column("Setup", style="magenta")
    table.add_column("Branch")
    table.add_column("Sandbox", style="dim")

    for row in rows:
        style = _STATUS_STYLES[row.lifecycle_status]
        table.add_row(
            str(row.id)[:8],
            row.name,
            f"[{style}]{row.lifecycle_status.value}[/{style}]",
            row.setup_status.value if row.setup_status else "-",
            row.branch_name or "-",
            row.sandbox_status.value if row.sandbox_status else "-",
        )

    console.print(table)


@app.callback()
def main_callback(
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (TOML format)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Load configuration and configure logging."""
    global _config

    try:
        config = load_config(config_path)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(code=1) from e

    if verbose:
        config.logging.level = "DEBUG"
        config.logging.format = "console"
    setup_logging(config.logging)
    _config = config

    if verbose:
        console.print("[dim]Debug logging enabled[/dim]")


if __name__ == "__main__":
    app()
