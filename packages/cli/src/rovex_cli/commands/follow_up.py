"""follow-up command: ask a question about a reviewed thread."""

from __future__ import annotations

import asyncio

import click
from rich.console import Console

from rovex_core.config import ReviewProvider, resolve_provider
from rovex_core.errors import PreconditionError, TransportError
from rovex_core.executor import ReviewSettings, get_transport
from rovex_core.follow_up import DEFAULT_FOLLOW_UP_HISTORY_CHARS, generate_follow_up

console = Console()


@click.command("follow-up")
@click.argument("thread_id")
@click.argument("question")
@click.option("--workspace", default=None, help="Workspace to answer from. Defaults to the thread's workspace.")
@click.option(
    "--provider",
    type=click.Choice([p.value for p in ReviewProvider]),
    default=None,
    help="Review provider. Overrides config file.",
)
@click.option("--model", default=None, help="Model name. Overrides config file.")
@click.pass_context
def follow_up_cmd(ctx, thread_id: str, question: str, workspace: str | None, provider: str | None, model: str | None):
    """Ask a follow-up QUESTION about the review in THREAD_ID.

    The answer streams as it is generated and is recorded in the thread
    together with the question.
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

    streamed = []

    def on_delta(text: str) -> None:
        streamed.append(text)
        console.print(text, end="", markup=False, highlight=False)

    try:
        answer = asyncio.run(
            generate_follow_up(
                store,
                lambda ws: get_transport(config, ws),
                ReviewSettings.from_config(config),
                thread_id,
                question,
                workspace=workspace,
                history_chars=int(config.get("follow_up_history_chars") or DEFAULT_FOLLOW_UP_HISTORY_CHARS),
                on_delta=on_delta,
            )
        )
    except (PreconditionError, TransportError) as e:
        raise click.ClickException(str(e)) from e

    if not streamed:
        console.print(answer.answer, markup=False, highlight=False)
    else:
        console.print()
    console.print(f"[dim]Answered by {answer.model}[/dim]")
