"""runs and show commands: read stored review runs."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

from rovex_cli.render import print_run, styled_status
from rovex_store.base import RecordNotFoundError

console = Console()


@click.command("runs")
@click.option("--thread", "thread_id", default=None, help="Only show runs of this thread.")
@click.option("--limit", default=20, show_default=True, help="Maximum number of runs to show (1-200).")
@click.pass_context
def runs_cmd(ctx, thread_id: str | None, limit: int):
    """List stored review runs, newest first."""
    store = ctx.obj["store"]
    runs = store.list_runs(thread_id=thread_id, limit=limit)
    if not runs:
        console.print("[yellow]No review runs found.[/yellow]")
        return

    table = Table(title="Review Runs", show_header=True, header_style="bold cyan")
    table.add_column("Run", style="bold")
    table.add_column("Status", width=22)
    table.add_column("Scope", max_width=40)
    table.add_column("Files", justify="right", width=8)
    table.add_column("Failed", justify="right", width=7)
    table.add_column("Findings", justify="right", width=9)
    table.add_column("Created", width=20)

    for r in runs:
        table.add_row(
            r.run_id,
            styled_status(r.status),
            r.scope_label or r.workspace,
            f"{r.completed_chunks}/{r.total_chunks}",
            str(r.failed_chunks),
            str(r.finding_count),
            r.created_at[:19].replace("T", " "),
        )

    console.print(table)


@click.command("show")
@click.argument("run_id")
@click.pass_context
def show_cmd(ctx, run_id: str):
    """Show the narrative, counters and findings of one run."""
    store = ctx.obj["store"]
    try:
        run = store.load_run(run_id)
    except RecordNotFoundError as e:
        raise click.ClickException(str(e)) from e
    print_run(console, run, show_bodies=True)
