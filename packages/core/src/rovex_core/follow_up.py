"""Follow-up questions on a reviewed thread.

A follow-up answers one user question from the thread's recent
conversation (review requests, narratives, earlier follow-ups). It needs a
finished review in the thread: without an assistant message there is
nothing to follow up on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from rovex_core.config import DEFAULT_CONFIG
from rovex_core.errors import PreconditionError
from rovex_core.executor import ReviewSettings
from rovex_core.prompts import build_follow_up_prompt
from rovex_core.providers.base import BaseTransport, DeltaCallback
from rovex_core.utils.text import non_empty, truncate_chars
from rovex_store.base import BaseThreadStore, RecordNotFoundError
from rovex_store.models import Message

logger = logging.getLogger(__name__)

DEFAULT_FOLLOW_UP_HISTORY_CHARS = DEFAULT_CONFIG["follow_up_history_chars"]
MAX_FOLLOW_UP_MESSAGES = 40

_ROLE_LABELS = {"system": "System", "user": "User", "assistant": "Assistant"}


@dataclass
class FollowUpAnswer:
    thread_id: str
    workspace: str
    model: str
    answer: str


def format_follow_up_history(messages: Sequence[Message], max_chars: int) -> tuple[str, bool]:
    """Render messages as ``Role: content`` blocks, skipping blank ones, cut to ``max_chars``."""
    entries = []
    for message in messages:
        content = message.content.strip()
        if not content:
            continue
        label = _ROLE_LABELS.get(message.role, message.role.capitalize())
        entries.append(f"{label}: {content}")
    return truncate_chars("\n\n".join(entries), max_chars)


async def generate_follow_up(
    thread_store: BaseThreadStore,
    transport_factory: Callable[[str], BaseTransport],
    settings: ReviewSettings,
    thread_id: str,
    question: str,
    workspace: Optional[str] = None,
    history_chars: int = DEFAULT_FOLLOW_UP_HISTORY_CHARS,
    on_delta: Optional[DeltaCallback] = None,
) -> FollowUpAnswer:
    """Answer ``question`` in the context of a thread and record both in it.

    The workspace defaults to the thread's own. Raises PreconditionError
    when the thread is unknown, the question is blank, or the thread has
    no review to follow up on. Provider failures propagate unchanged; the
    question stays recorded.
    """
    try:
        thread = thread_store.load_thread(thread_id)
    except RecordNotFoundError as e:
        raise PreconditionError(str(e)) from e

    resolved_workspace = non_empty(workspace) or non_empty(thread.workspace)
    if resolved_workspace is None:
        raise PreconditionError("Workspace path must not be empty.")
    text = non_empty(question)
    if text is None:
        raise PreconditionError("Question must not be empty.")

    recent = thread_store.list_messages(thread_id)[-MAX_FOLLOW_UP_MESSAGES:]
    if not any(m.role == "assistant" for m in recent):
        raise PreconditionError("Start review before asking follow-up questions.")

    history, truncated = format_follow_up_history(recent, history_chars)
    if not history.strip():
        raise PreconditionError("No conversation history available for follow-up.")
    if truncated:
        logger.debug("Follow-up history for %s cut to %d chars", thread_id, history_chars)

    prompt = build_follow_up_prompt(thread.title, resolved_workspace, text, history, truncated)
    thread_store.persist_message(thread_id, "user", text)

    transport = transport_factory(resolved_workspace)
    try:
        answer = await transport.generate_narrative(prompt, settings.model, settings.timeout_ms, on_delta=on_delta)
        model = transport.describe_model(settings.model)
    finally:
        await transport.aclose()

    thread_store.persist_message(thread_id, "assistant", answer)
    return FollowUpAnswer(thread_id=thread_id, workspace=resolved_workspace, model=model, answer=answer)
