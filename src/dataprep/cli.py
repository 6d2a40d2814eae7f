"""Typer CLI entrypoint for dataprep."""
import asyncio

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from dataprep.core.crypto import generate_key
from dataprep.core.logging import setup_logging
from dataprep.core.settings import get_settings
from dataprep.db.base import init_models
from dataprep.services.runs import execute_run, reconcile_interrupted_runs
from dataprep.services.sources import run_sync

app_cli = typer.Typer(help="dataprep command line interface")
console = Console()


@app_cli.command("health")
def health() -> None:
    """Show basic health / config info."""
    settings = get_settings()
    table = Table(title="dataprep Health")
    table.add_column("Key")
    table.add_column("Value")
    table.add_row("environment", settings.environment)
    table.add_row("debug", str(settings.debug))
    table.add_row("api_prefix", settings.api_prefix)
    table.add_row("database", settings.database_url.split("@")[-1])
    table.add_row("run_executor", settings.run_executor)
    table.add_row("dataset_dir", settings.dataset_dir)
    table.add_row("encryption_key", "configured" if settings.encryption_key else "missing")
    console.print(table)


@app_cli.command("run-server")
def run_server(host: str = "0.0.0.0", port: int = 8000, reload: bool = True) -> None:  # pragma: no cover
    """Run the FastAPI development server."""
    uvicorn.run("dataprep.main:app", host=host, port=port, reload=reload)


@app_cli.command("init-db")
def init_db(drop: bool = typer.Option(False, help="Drop all tables first")) -> None:
    """Create database tables."""
    if drop and not typer.confirm("Drop all tables and data?"):
        raise typer.Abort()
    asyncio.run(init_models(drop=drop))
    console.print("[green]Database initialized[/green]")


@app_cli.command("reconcile-runs")
def reconcile_runs(
    include_pending: bool = typer.Option(
        False, help="Also fail pending runs (only when no worker will pick them up)"
    ),
) -> None:
    """Mark runs interrupted by a process exit as failed."""
    from dataprep.schemas import RunStatus

    setup_logging(get_settings().log_level)
    statuses = [RunStatus.RUNNING]
    if include_pending:
        statuses.append(RunStatus.PENDING)
    failed = asyncio.run(reconcile_interrupted_runs(statuses))
    if failed:
        console.print(f"[yellow]Failed {len(failed)} interrupted runs:[/yellow] {failed}")
    else:
        console.print("[green]No interrupted runs[/green]")


@app_cli.command("execute-run")
def execute_run_command(run_id: int) -> None:  # pragma: no cover - IO heavy
    """Execute a pending run in this process."""
    setup_logging(get_settings().log_level)
    status = asyncio.run(execute_run(run_id))
    console.print(f"Run {run_id}: [bold]{status.value if status else 'not found'}[/bold]")


@app_cli.command("sync-source")
def sync_source_command(source_id: int) -> None:  # pragma: no cover - IO heavy
    """Fetch records for a source already marked as syncing."""
    setup_logging(get_settings().log_level)
    status = asyncio.run(run_sync(source_id))
    console.print(f"Source {source_id}: [bold]{status.value if status else 'unchanged'}[/bold]")


@app_cli.command("generate-key")
def generate_key_command() -> None:
    """Print a new Fernet key for DATAPREP_ENCRYPTION_KEY."""
    console.print(generate_key())


if __name__ == "__main__":  # pragma: no cover
    app_cli()
