"""review command: review a local branch or a GitHub pull request."""

from __future__ import annotations

import asyncio
import os
import signal

import click
from rich.console import Console

from rovex_cli.render import print_run, styled_severity
from rovex_core.config import ReviewProvider, load_guidelines, resolve_provider
from rovex_core.errors import PreconditionError
from rovex_core.executor import ReviewExecutor, ReviewRequest, ReviewSettings, get_transport
from rovex_core.run_queue import RunQueue
from rovex_store.base import RecordNotFoundError
from rovex_store.models import (
    EVENT_CHUNK_FAILED,
    EVENT_DESCRIPTION_DELTA,
    EVENT_DESCRIPTION_FAILED,
    EVENT_FINDING,
    STATUS_CANCELED,
    STATUS_FAILED,
    ProgressEvent,
)

console = Console()


def _build_request(config: dict, workspace: str, base_ref: str, repo: str | None, pr_number: int | None, fetch: bool):
    """Collect the diff to review. Returns (request, thread title)."""
    if pr_number is not None:
        from rovex_cli.auth import resolve_github_token
        from rovex_core.gh.pull_request import build_pull_diff, get_pull, get_repo

        token = resolve_github_token(config)
        if not token:
            raise click.UsageError(
                "No GitHub token found. Set GITHUB_TOKEN or run `gh auth login` first.\n"
                "Create a token at https://github.com/settings/tokens"
            )
        pr = get_pull(get_repo(repo, token=token), pr_number)
        pull_diff = build_pull_diff(pr)
        scope = f"{repo}#{pr_number}"
        request = ReviewRequest(
            thread_id="",
            workspace=os.path.abspath(workspace),
            base_ref=pull_diff.base_ref,
            merge_base=pull_diff.merge_base,
            head=pull_diff.head,
            diff=pull_diff.diff,
            files_changed=pull_diff.files_changed,
            insertions=pull_diff.insertions,
            deletions=pull_diff.deletions,
            scope_label=scope,
        )
        return request, f"{scope} {pull_diff.title}".strip()

    from rovex_core.git.workspace import compare_workspace_diff

    diff = compare_workspace_diff(workspace, base_ref=base_ref, fetch_remote=fetch)
    scope = f"{diff.base_ref}...HEAD"
    request = ReviewRequest(
        thread_id="",
        workspace=diff.workspace,
        base_ref=diff.base_ref,
        merge_base=diff.merge_base,
        head=diff.head,
        diff=diff.diff,
        files_changed=diff.files_changed,
        insertions=diff.insertions,
        deletions=diff.deletions,
        scope_label=scope,
    )
    return request, f"{os.path.basename(diff.workspace)} {scope}"


def _install_interrupt(loop: asyncio.AbstractEventLoop, interrupted: asyncio.Event) -> None:
    try:
        loop.add_signal_handler(signal.SIGINT, interrupted.set)
    except NotImplementedError:
        # Windows doesn't support add_signal_handler
        signal.signal(signal.SIGINT, lambda _sig, _frame: loop.call_soon_threadsafe(interrupted.set))


async def _run(queue: RunQueue, request: ReviewRequest):
    run = await queue.start_run(request)
    console.print(f"Started [bold]{run.run_id}[/bold] for {run.total_chunks} file(s). Press Ctrl-C to cancel.")

    interrupted = asyncio.Event()
    _install_interrupt(asyncio.get_running_loop(), interrupted)

    with console.status("Review queued...") as status:

        def on_event(event: ProgressEvent) -> None:
            if event.run_id != run.run_id or event.status == EVENT_DESCRIPTION_DELTA:
                return
            status.update(f"[{event.completed_chunks}/{event.total_chunks}] {event.message}")
            if event.status == EVENT_FINDING and event.finding is not None:
                console.print(f"  {styled_severity(event.finding.severity)} {event.message}")
            elif event.status in (EVENT_CHUNK_FAILED, EVENT_DESCRIPTION_FAILED):
                console.print(f"  [red]{event.message}[/red]")

        unsubscribe = queue.subscribe(on_event)
        finished = asyncio.create_task(queue.wait(run.run_id))
        interrupt = asyncio.create_task(interrupted.wait())
        try:
            await asyncio.wait({finished, interrupt}, return_when=asyncio.FIRST_COMPLETED)
            if interrupted.is_set() and not finished.done():
                result = await queue.cancel_run(run.run_id)
                status.update(f"Cancel requested ({result.status}); waiting for in-flight calls...")
            final = await finished
        finally:
            interrupt.cancel()
            unsubscribe()
            await queue.aclose()
    return final


@click.command("review")
@click.option("--workspace", default=".", show_default=True, help="Local git checkout to review.")
@click.option("--base", "base_ref", default="origin/main", show_default=True, help="Base ref to compare against.")
@click.option("--fetch", is_flag=True, help="Fetch origin before comparing.")
@click.option("--repo", default=None, help="GitHub repository in owner/name format (with --pr).")
@click.option("--pr", "pr_number", type=int, default=None, help="Review this pull request instead of the workspace.")
@click.option("--prompt", default=None, help="Reviewer goal. Defaults to the configured guidelines.")
@click.option(
    "--provider",
    type=click.Choice([p.value for p in ReviewProvider]),
    default=None,
    help="Review provider. Overrides config file.",
)
@click.option("--model", default=None, help="Model name. Overrides config file.")
@click.option("--thread", "thread_id", default=None, help="Attach the run to an existing thread.")
@click.pass_context
def review_cmd(
    ctx,
    workspace: str,
    base_ref: str,
    fetch: bool,
    repo: str | None,
    pr_number: int | None,
    prompt: str | None,
    provider: str | None,
    model: str | None,
    thread_id: str | None,
):
    """Run a concurrent AI review and stream its progress.

    Compares the workspace against the merge base with --base, or fetches
    a pull request with --repo/--pr. Each changed file is reviewed in
    parallel while a high-level description is generated.

    \b
    Environment variables:
      OPENAI_API_KEY   Required for --provider openai
      GITHUB_TOKEN     GitHub token for --pr (or use gh CLI)
    """
    config = dict(ctx.obj["config"])
    store = ctx.obj["store"]
    if provider:
        config["provider"] = provider
    if model:
        config["model"] = model

    try:
        selected = resolve_provider(config.get("provider"))
    except ValueError as e:
        raise click.UsageError(str(e)) from e
    if selected is ReviewProvider.OPENAI and not config.get("openai_api_key"):
        raise click.UsageError("OPENAI_API_KEY environment variable is not set.")
    if (repo is None) != (pr_number is None):
        raise click.UsageError("--repo and --pr must be given together.")

    try:
        request, title = _build_request(config, workspace, base_ref, repo, pr_number, fetch)
        request.prompt = prompt or load_guidelines(config)

        if thread_id:
            try:
                store.load_thread(thread_id)
            except RecordNotFoundError as e:
                raise click.BadParameter(str(e), param_hint="--thread") from e
        else:
            thread_id = store.create_thread(title, workspace=request.workspace).id
        request.thread_id = thread_id

        executor = ReviewExecutor(
            ReviewSettings.from_config(config),
            store,
            transport_factory=lambda ws: get_transport(config, ws),
        )
        queue = RunQueue(executor, store, store, max_parallel_runs=int(config.get("max_parallel_runs") or 1))
        final = asyncio.run(_run(queue, request))
    except (PreconditionError, FileNotFoundError) as e:
        raise click.ClickException(str(e)) from e

    print_run(console, final)
    if final.status == STATUS_CANCELED:
        console.print("[magenta]Review canceled.[/magenta]")
        ctx.exit(130)
    if final.status == STATUS_FAILED:
        raise click.ClickException(final.error or "Review failed.")
