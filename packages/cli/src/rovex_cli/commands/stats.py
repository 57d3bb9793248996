"""stats command: aggregate findings across stored runs."""

from __future__ import annotations

from collections import Counter

import click
from rich.console import Console
from rich.table import Table

from rovex_cli.render import SEVERITY_ORDER, styled_severity, styled_status
from rovex_store.base import MAX_LIST_LIMIT

console = Console()


@click.command("stats")
@click.option("--thread", "thread_id", default=None, help="Only include runs of this thread.")
@click.option("--top", default=10, show_default=True, help="Number of most flagged files to show.")
@click.pass_context
def stats_cmd(ctx, thread_id: str | None, top: int):
    """Show severity distribution and most flagged files across stored runs.

    Covers the most recent runs only (at most 200).
    """
    store = ctx.obj["store"]
    runs = store.list_runs(thread_id=thread_id, limit=MAX_LIST_LIMIT)
    if not runs:
        console.print("[yellow]No review runs found.[/yellow]")
        return

    status_counter: Counter[str] = Counter(r.status for r in runs)
    severity_counter: Counter[str] = Counter()
    file_counter: Counter[str] = Counter()
    for run in runs:
        for finding in run.findings:
            severity_counter[finding.severity] += 1
            file_counter[finding.file_path] += 1
    total_findings = sum(severity_counter.values())

    # --- Summary ---
    console.print("\n[bold]Review stats[/bold]" + (f" for thread [cyan]{thread_id}[/cyan]" if thread_id else ""))
    console.print(f"  Total runs:      {len(runs)}")
    console.print(f"  Total findings:  {total_findings}")
    console.print(f"  Avg per run:     {total_findings / len(runs):.1f}")
    console.print("  Statuses:        " + ", ".join(f"{styled_status(s)} {n}" for s, n in status_counter.most_common()))

    # --- Severity breakdown ---
    if severity_counter:
        sev_table = Table(title="Severity Breakdown", show_header=True)
        sev_table.add_column("Severity", style="bold")
        sev_table.add_column("Count", justify="right")
        sev_table.add_column("% of total", justify="right")
        for sev in SEVERITY_ORDER:
            count = severity_counter.get(sev, 0)
            sev_table.add_row(styled_severity(sev), str(count), f"{count / total_findings * 100:.1f}%")
        console.print(sev_table)

    # --- Most flagged files ---
    if file_counter:
        file_table = Table(title=f"Top {top} Most Flagged Files", show_header=True)
        file_table.add_column("File")
        file_table.add_column("Findings", justify="right")
        for file_path, count in file_counter.most_common(top):
            file_table.add_row(file_path, str(count))
        console.print(file_table)
