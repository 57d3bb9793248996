"""Rich rendering shared by the review, runs, show and comment commands."""

from __future__ import annotations

from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from rovex_store.models import InlineComment, ReviewFinding, ReviewRun

STATUS_STYLE = {
    "queued": "dim",
    "running": "cyan",
    "completed": "green",
    "completed_with_errors": "yellow",
    "failed": "red",
    "canceled": "magenta",
}

SEVERITY_ORDER = ["critical", "high", "medium", "low"]
SEVERITY_STYLE = {"critical": "bold red", "high": "red", "medium": "yellow", "low": "blue"}


def styled_status(status: str) -> str:
    style = STATUS_STYLE.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def styled_severity(severity: str) -> str:
    style = SEVERITY_STYLE.get(severity, "white")
    return f"[{style}]{severity}[/{style}]"


def findings_table(findings: list[ReviewFinding], title: str = "Findings") -> Table:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Severity", width=10)
    table.add_column("Location", max_width=50)
    table.add_column("Title", max_width=40)
    table.add_column("Confidence", justify="right", width=10)
    for f in findings:
        confidence = f"{f.confidence:.2f}" if f.confidence is not None else "-"
        table.add_row(styled_severity(f.severity), f"{f.file_path}:{f.line_number}", f.title, confidence)
    return table


def print_run(console: Console, run: ReviewRun, show_bodies: bool = False) -> None:
    """Print a run's header, narrative and findings."""
    console.print(f"\n[bold]{run.run_id}[/bold]  {styled_status(run.status)}")
    console.print(f"  Thread:   {run.thread_id}")
    if run.scope_label:
        console.print(f"  Scope:    {run.scope_label}")
    console.print(f"  Compare:  {run.base_ref} ({run.merge_base[:7]}) → {run.head[:7]}")
    console.print(
        f"  Files:    {run.completed_chunks}/{run.total_chunks} reviewed, "
        f"{run.failed_chunks} failed, {run.finding_count} finding(s)"
    )
    if run.model:
        console.print(f"  Model:    {run.model}")
    if run.diff_truncated:
        console.print(f"  [yellow]Diff truncated: {run.diff_chars_used}/{run.diff_chars_total} chars reviewed.[/yellow]")
    if run.error:
        console.print(f"  [red]{run.error}[/red]")

    if run.review:
        console.print()
        console.print(Markdown(run.review))

    if run.findings:
        console.print(findings_table(run.findings))
        if show_bodies:
            for f in run.findings:
                console.print(f"\n{styled_severity(f.severity)} [bold]{f.file_path}:{f.line_number}[/bold] {f.title}")
                console.print(f"  {f.body}")


def comment_location(comment: InlineComment) -> str:
    side = "+" if comment.side == "additions" else "-"
    location = f"{comment.file_path}:{side}{comment.line_number}"
    if comment.end_line_number is not None:
        end_side = "+" if comment.end_side == "additions" else "-"
        location += f"..{end_side}{comment.end_line_number}"
    return location


def comments_table(comments: list[InlineComment], title: str = "Inline Comments") -> Table:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Location", max_width=50)
    table.add_column("Author", width=12)
    table.add_column("Comment", max_width=60)
    table.add_column("Created", width=20)
    for c in comments:
        table.add_row(comment_location(c), c.author, c.body, c.created_at[:19].replace("T", " "))
    return table
