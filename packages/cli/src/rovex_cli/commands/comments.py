"""comment and comments commands: inline notes on a reviewed comparison.

Comments are anchored to the run's thread and comparison, so they show
up again for any later run over the same workspace, base and head.
"""

from __future__ import annotations

import click
from rich.console import Console

from rovex_cli.render import comment_location, comments_table
from rovex_store.base import InvalidCommentError, RecordNotFoundError
from rovex_store.models import InlineComment

console = Console()

_SIDES = click.Choice(["additions", "deletions", "addition", "deletion", "added", "removed"], case_sensitive=False)


def _load_run(store, run_id: str):
    try:
        return store.load_run(run_id)
    except RecordNotFoundError as e:
        raise click.ClickException(str(e)) from e


@click.command("comment")
@click.argument("run_id")
@click.option("--file", "file_path", required=True, help="Path of the commented file.")
@click.option("--line", "line_number", type=int, required=True, help="Line the comment starts on.")
@click.option("--body", required=True, help="Comment text.")
@click.option("--side", type=_SIDES, default="additions", show_default=True, help="Diff side of --line.")
@click.option("--end-line", "end_line_number", type=int, default=None, help="Last line of a multi-line comment.")
@click.option("--end-side", type=_SIDES, default=None, help="Diff side of --end-line. Defaults to --side.")
@click.option("--author", default=None, help="Comment author. Defaults to 'You'.")
@click.pass_context
def comment_cmd(
    ctx,
    run_id: str,
    file_path: str,
    line_number: int,
    body: str,
    side: str,
    end_line_number: int | None,
    end_side: str | None,
    author: str | None,
):
    """Add an inline comment to the comparison reviewed by RUN_ID."""
    store = ctx.obj["store"]
    run = _load_run(store, run_id)
    try:
        stored = store.create_inline_comment(
            InlineComment(
                thread_id=run.thread_id,
                workspace=run.workspace,
                base_ref=run.base_ref,
                merge_base=run.merge_base,
                head=run.head,
                file_path=file_path,
                side=side,
                line_number=line_number,
                body=body,
                author=author or "",
                end_side=end_side,
                end_line_number=end_line_number,
            )
        )
    except (InvalidCommentError, RecordNotFoundError) as e:
        raise click.ClickException(str(e)) from e
    console.print(f"Added [bold]{stored.id}[/bold] on {comment_location(stored)}")


@click.command("comments")
@click.argument("run_id")
@click.pass_context
def comments_cmd(ctx, run_id: str):
    """List inline comments on the comparison reviewed by RUN_ID."""
    store = ctx.obj["store"]
    run = _load_run(store, run_id)
    comments = store.list_inline_comments(run.thread_id, run.workspace, run.base_ref, run.merge_base, run.head)
    if not comments:
        console.print("[yellow]No inline comments found.[/yellow]")
        return
    console.print(comments_table(comments))
