"""CLI entry point for rovex.

Commands:
  review     - review a local branch or a GitHub pull request with live progress
  runs       - list stored review runs
  show       - print one stored run with its findings
  stats      - aggregate findings across stored runs
  follow-up  - ask a question about a reviewed thread
  comment    - add an inline comment to a reviewed comparison
  comments   - list inline comments on a reviewed comparison
"""

from __future__ import annotations

import importlib.metadata
import logging

import click

from rovex_cli.commands.comments import comment_cmd, comments_cmd
from rovex_cli.commands.follow_up import follow_up_cmd
from rovex_cli.commands.review import review_cmd
from rovex_cli.commands.runs import runs_cmd, show_cmd
from rovex_cli.commands.stats import stats_cmd


def _build_store(config: dict):
    """Instantiate the configured store from .rovex.yml settings.

    Store selection:
      store: sqlite → SQLiteStore (store_path, default .rovex.db)
      store: memory → MemoryStore (nothing survives the process)

    The same object serves as run store and thread store. This factory
    lives in cli.py so neither rovex_core nor rovex_store know about the
    CLI config format.
    """
    store_type = config.get("store", "sqlite")
    max_events = int(config.get("max_progress_events") or 200)

    if store_type == "memory":
        from rovex_store.memory import MemoryStore

        return MemoryStore(max_progress_events=max_events)

    if store_type != "sqlite":
        raise click.UsageError(f"Unknown store '{store_type}'. Use 'sqlite' or 'memory'.")

    from rovex_store.sqlite import SQLiteStore

    return SQLiteStore(db_path=config.get("store_path", ".rovex.db"), max_progress_events=max_events)


@click.group()
@click.version_option(
    version=importlib.metadata.version("rovex"),
    prog_name="rovex",
)
@click.option(
    "--config",
    "config_path",
    default=".rovex.yml",
    show_default=True,
    help="Path to the configuration file.",
    envvar="ROVEX_CONFIG",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, config_path: str, verbose: bool):
    """Concurrent AI code review for local branches and pull requests."""
    from rovex_core.config import load_config

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)

    config = load_config(config_path)
    store = _build_store(config)
    ctx.obj["store"] = store
    ctx.obj["config"] = config
    ctx.call_on_close(store.close)


main.add_command(review_cmd)
main.add_command(runs_cmd)
main.add_command(show_cmd)
main.add_command(stats_cmd)
main.add_command(follow_up_cmd)
main.add_command(comment_cmd)
main.add_command(comments_cmd)
