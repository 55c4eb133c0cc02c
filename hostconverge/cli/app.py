"""
hostconverge command line.

Prompts, renders plans and run summaries, and maps the outcome of a run
onto the exit code:
  0  committed
  1  rolled back or aborted
  2  rollback failed, the host needs an operator
  3  another run holds the host lock
"""

import logging
import os
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError as DocumentError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table
from yaml import YAMLError

from hostconverge.adapters.base import AdapterRegistry
from hostconverge.adapters.registry import build_system_registry
from hostconverge.config import dump_document, load_document
from hostconverge.errors import (
    ConcurrentRunError,
    FatalRollbackError,
    PlanConflictError,
    ProbeError,
)
from hostconverge.models.desired import DesiredConfig
from hostconverge.models.plan import Action, Plan
from hostconverge.models.reconciler import ReconcilerConfig
from hostconverge.models.report import Outcome, RunState, Summary
from hostconverge.profiles.ssh_hardening import MAX_PORT, MIN_PORT, ssh_hardening_profile
from hostconverge.reconciler.engine import Reconciler
from hostconverge.report.store import ReportStore

logger = logging.getLogger(__name__)

EXIT_COMMITTED = 0
EXIT_FAILED = 1
EXIT_FATAL_ROLLBACK = 2
EXIT_CONCURRENT_RUN = 3

DEFAULT_DB = "/var/lib/hostconverge/reports.db"

app = typer.Typer(
    name="hostconverge",
    help="Idempotent host configuration: plan, apply and harden a single host",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()

ACTION_STYLES = {
    Action.CREATE: "green",
    Action.UPDATE: "yellow",
    Action.REMOVE: "red",
    Action.NOOP: "dim",
}
OUTCOME_STYLES = {
    Outcome.APPLIED: "green",
    Outcome.NOOP: "dim",
    Outcome.SKIPPED: "yellow",
    Outcome.FAILED: "bold red",
    Outcome.ROLLED_BACK: "magenta",
}
STATUS_STYLES = {
    RunState.COMMITTED: "green",
    RunState.ROLLED_BACK: "yellow",
    RunState.ABORTED: "red",
}


def build_registry(config: ReconcilerConfig) -> AdapterRegistry:
    """Adapters used by every command."""
    return build_system_registry(config)


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    lock_path: str = typer.Option(ReconcilerConfig().lock_path, "--lock-path", help="Host lock file"),
    db: str = typer.Option(DEFAULT_DB, "--db", help="Report ledger (SQLite)"),
    rollback_prior: bool = typer.Option(
        False, "--rollback-prior", help="On a sensitive failure also undo earlier sensitive changes"
    ),
    window: Optional[str] = typer.Option(
        None, "--window", help="Cron expression; sensitive changes only while it matches"
    ),
):
    setup_logging(verbose)
    ctx.obj = {
        "config": ReconcilerConfig(
            lock_path=lock_path,
            rollback_prior_on_abort=rollback_prior,
            maintenance_schedule=window,
        ),
        "db": db,
    }


def _config(ctx: typer.Context) -> ReconcilerConfig:
    return ctx.obj["config"]


def _open_store(ctx: typer.Context) -> ReportStore:
    path = Path(ctx.obj["db"])
    path.parent.mkdir(parents=True, exist_ok=True)
    return ReportStore(str(path))


def _load(path: Path) -> DesiredConfig:
    try:
        return load_document(path)
    except (OSError, YAMLError, ValueError, DocumentError) as e:
        console.print(f"[bold red]Cannot load {path}:[/bold red] {e}")
        raise typer.Exit(code=EXIT_FAILED)


def _require_root() -> None:
    if os.geteuid() != 0:
        console.print("[bold red]This command changes system configuration and must run as root[/bold red]")
        raise typer.Exit(code=EXIT_FAILED)


def render_plan(plan: Plan) -> None:
    table = Table(title=f"Plan {plan.id}", show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Resource", style="cyan")
    table.add_column("Action")
    table.add_column("Observed")
    table.add_column("Desired")
    table.add_column("Sensitive", justify="center")
    for i, op in enumerate(plan.operations, 1):
        style = ACTION_STYLES[op.action]
        table.add_row(
            str(i),
            op.key,
            f"[{style}]{op.action.value}[/{style}]",
            repr(op.observed.value),
            repr(op.desired),
            "yes" if op.sensitive else "",
        )
    console.print(table)
    if plan.is_converged():
        console.print("[green]Host already matches the desired configuration[/green]")
    else:
        console.print(f"[bold]{len(plan.changes)}[/bold] change(s) to apply")


def render_summary(summary: Summary) -> None:
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Resource", style="cyan")
    table.add_column("Phase")
    table.add_column("Outcome")
    table.add_column("Detail", style="dim")
    for record in summary.outcomes:
        style = OUTCOME_STYLES[record.outcome]
        table.add_row(
            record.key,
            record.phase,
            f"[{style}]{record.outcome.value}[/{style}]",
            record.detail or "",
        )
    console.print(table)

    style = STATUS_STYLES.get(summary.status, "white")
    lines = [
        f"[bold]Run:[/bold] {summary.run_id}",
        f"[bold]Status:[/bold] [{style}]{summary.status.value}[/{style}]",
        f"[bold]Applied:[/bold] {summary.count(Outcome.APPLIED)}  "
        f"[bold]Unchanged:[/bold] {summary.count(Outcome.NOOP)}  "
        f"[bold]Rolled back:[/bold] {summary.count(Outcome.ROLLED_BACK)}",
    ]
    if summary.backups:
        lines.append("[bold]Backups:[/bold] " + ", ".join(summary.backups))
    if summary.error:
        lines.append(f"[bold red]Error:[/bold red] {summary.error}")
    console.print(Panel.fit("\n".join(lines), border_style=style))


def _reconcile(ctx: typer.Context, document: DesiredConfig, yes: bool) -> None:
    config = _config(ctx)
    reconciler = Reconciler(build_registry(config), config=config, report_store=_open_store(ctx))

    try:
        plan = reconciler.plan(document)
    except (PlanConflictError, ProbeError) as e:
        console.print(f"[bold red]Cannot plan:[/bold red] {e}")
        raise typer.Exit(code=EXIT_FAILED)
    render_plan(plan)
    if plan.is_converged():
        raise typer.Exit(code=EXIT_COMMITTED)
    if not yes and not Confirm.ask("Apply these changes?", default=False):
        console.print("[red]Aborted by user[/red]")
        raise typer.Exit(code=EXIT_FAILED)

    try:
        summary = reconciler.run(document)
    except ConcurrentRunError as e:
        console.print(f"[bold red]{e}[/bold red]")
        raise typer.Exit(code=EXIT_CONCURRENT_RUN)
    except FatalRollbackError as e:
        if e.summary is not None:
            render_summary(e.summary)
        console.print(Panel.fit(
            f"[bold red]Rollback failed:[/bold red] {e}\n"
            f"[bold]Context:[/bold] {e.context}\n"
            "Restore the backups listed above by hand.",
            border_style="red",
        ))
        raise typer.Exit(code=EXIT_FATAL_ROLLBACK)

    render_summary(summary)
    raise typer.Exit(code=summary.exit_code)


@app.command()
def plan(
    ctx: typer.Context,
    document: Path = typer.Argument(..., help="Desired configuration (YAML or JSON)"),
):
    """Show what apply would change, without changing anything."""
    config = _config(ctx)
    reconciler = Reconciler(build_registry(config), config=config)
    try:
        result = reconciler.plan(_load(document))
    except (PlanConflictError, ProbeError) as e:
        console.print(f"[bold red]Cannot plan:[/bold red] {e}")
        raise typer.Exit(code=EXIT_FAILED)
    render_plan(result)


@app.command()
def apply(
    ctx: typer.Context,
    document: Path = typer.Argument(..., help="Desired configuration (YAML or JSON)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Converge the host to a desired configuration."""
    _require_root()
    _reconcile(ctx, _load(document), yes)


def _ask_port() -> int:
    while True:
        answer = Prompt.ask(f"Enter custom SSH port ({MIN_PORT}-{MAX_PORT}, recommended: 2222-9999)")
        if answer.isdigit() and MIN_PORT <= int(answer) <= MAX_PORT:
            return int(answer)
        console.print(f"[red]Invalid port. Please enter a number between {MIN_PORT} and {MAX_PORT}[/red]")


@app.command()
def harden(
    ctx: typer.Context,
    port: Optional[int] = typer.Option(None, "--port", "-p", help=f"SSH port ({MIN_PORT}-{MAX_PORT})"),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Write the profile as a document instead of applying it"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Harden SSH: custom port, key-only logins, firewall and fail2ban."""
    if port is None:
        port = _ask_port()
    try:
        document = ssh_hardening_profile(port)
    except ValueError as e:
        console.print(f"[bold red]{e}[/bold red]")
        raise typer.Exit(code=EXIT_FAILED)

    if output is not None:
        output.write_text(dump_document(document))
        console.print(f"[green]Wrote SSH hardening profile to {output}[/green]")
        return

    _require_root()
    console.print(Panel.fit(
        f"[bold]SSH port:[/bold] {port}\n"
        "[bold]Root login:[/bold] disabled\n"
        "[bold]Password authentication:[/bold] disabled\n"
        "[bold]Public key authentication:[/bold] enabled\n"
        f"[bold]Firewall:[/bold] deny incoming, allow outgoing, allow {port}/tcp\n"
        "[bold]fail2ban:[/bold] sshd jail, 5 retries in 10 minutes bans for 1 hour",
        title="SSH hardening",
        border_style="cyan",
    ))
    console.print(
        "[yellow]Keep this session open and test a new connection on port "
        f"{port} before logging out.[/yellow]"
    )
    _reconcile(ctx, document, yes)


@app.command()
def reports(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n", help="Number of runs"),
    status: Optional[RunState] = typer.Option(None, "--status", help="Only runs that ended in this state"),
):
    """List recent runs from the report ledger."""
    store = _open_store(ctx)
    summaries = store.query_by_status(status)[-limit:] if status else store.query_recent(limit)
    table = Table(title="Recent runs", show_header=True, header_style="bold cyan")
    table.add_column("Run", style="cyan")
    table.add_column("Status")
    table.add_column("Started")
    table.add_column("Applied", justify="right")
    table.add_column("Error", style="dim")
    for summary in summaries:
        style = STATUS_STYLES.get(summary.status, "white")
        table.add_row(
            summary.run_id,
            f"[{style}]{summary.status.value}[/{style}]",
            summary.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            str(summary.count(Outcome.APPLIED)),
            summary.error or "",
        )
    console.print(table)
    store.close()


@app.command("verify-reports")
def verify_reports(ctx: typer.Context):
    """Check the report ledger for tampering."""
    store = _open_store(ctx)
    valid = store.verify_chain_integrity()
    total = store.count()
    store.close()
    if valid:
        console.print(f"[green]Ledger intact[/green] ({total} runs)")
        return
    console.print(f"[bold red]Ledger chain broken[/bold red] ({total} runs)")
    raise typer.Exit(code=EXIT_FAILED)


def main():
    app()
