"""MemoryStore: process-local store for tests and throwaway sessions.

Nothing survives the process. Every read returns a deep copy, so callers
observe snapshots and can never mutate stored state behind the lock.
"""

from __future__ import annotations

import copy
import threading
import uuid
from typing import Optional

from rovex_store.base import (
    DEFAULT_MAX_PROGRESS_EVENTS,
    BaseRunStore,
    BaseThreadStore,
    RecordNotFoundError,
    apply_result,
    apply_status,
    clamp_limit,
    comment_scope_complete,
    counters_of,
    merge_progress,
    prepare_inline_comment,
    utc_now,
)
from rovex_store.models import (
    MESSAGE_ROLES,
    InlineComment,
    Message,
    ProgressEvent,
    ReviewResult,
    ReviewRun,
    RunCounters,
    Thread,
)


class MemoryStore(BaseRunStore, BaseThreadStore):
    def __init__(self, max_progress_events: int = DEFAULT_MAX_PROGRESS_EVENTS):
        self._max_events = max_progress_events
        self._lock = threading.Lock()
        self._runs: dict[str, ReviewRun] = {}
        self._threads: dict[str, Thread] = {}
        self._messages: dict[str, list[Message]] = {}
        self._next_message_id = 1
        self._comments: list[InlineComment] = []

    # ------------------------------------------------------------------ #
    # Runs                                                                 #
    # ------------------------------------------------------------------ #

    def create_run(self, run: ReviewRun) -> None:
        with self._lock:
            stored = copy.deepcopy(run)
            if not stored.created_at:
                stored.created_at = utc_now()
            self._runs[run.run_id] = stored

    def append_progress(self, run_id: str, event: ProgressEvent) -> RunCounters:
        with self._lock:
            run = self._get(run_id)
            merge_progress(run, event, self._max_events)
            return counters_of(run)

    def set_status(
        self,
        run_id: str,
        status: str,
        error: Optional[str] = None,
        mark_started: bool = False,
        mark_ended: bool = False,
        mark_canceled: bool = False,
    ) -> bool:
        with self._lock:
            run = self._get(run_id)
            return apply_status(
                run,
                status,
                error=error,
                mark_started=mark_started,
                mark_ended=mark_ended,
                mark_canceled=mark_canceled,
            )

    def finalize(self, run_id: str, result: ReviewResult, status: str, error: Optional[str] = None) -> bool:
        with self._lock:
            return apply_result(self._get(run_id), copy.deepcopy(result), status, error=error)

    def load_run(self, run_id: str) -> ReviewRun:
        with self._lock:
            return copy.deepcopy(self._get(run_id))

    def list_runs(self, thread_id: Optional[str] = None, limit: Optional[int] = None) -> list[ReviewRun]:
        with self._lock:
            runs = [r for r in self._runs.values() if thread_id is None or r.thread_id == thread_id]
            # Stable sort keeps insertion order for runs created in the same instant.
            runs = sorted(runs, key=lambda r: r.created_at, reverse=True)
            return copy.deepcopy(runs[: clamp_limit(limit)])

    def _get(self, run_id: str) -> ReviewRun:
        try:
            return self._runs[run_id]
        except KeyError:
            raise RecordNotFoundError(f"Review run {run_id} was not found.") from None

    # ------------------------------------------------------------------ #
    # Inline comments                                                      #
    # ------------------------------------------------------------------ #

    def create_inline_comment(self, comment: InlineComment) -> InlineComment:
        stored = prepare_inline_comment(comment)
        with self._lock:
            if stored.thread_id not in self._threads:
                raise RecordNotFoundError(f"Thread {stored.thread_id} was not found.")
            self._comments.append(stored)
            return copy.deepcopy(stored)

    def list_inline_comments(
        self, thread_id: str, workspace: str, base_ref: str, merge_base: str, head: str
    ) -> list[InlineComment]:
        if not comment_scope_complete(workspace, base_ref, merge_base, head):
            return []
        scope = (thread_id, workspace.strip(), base_ref.strip(), merge_base.strip(), head.strip())
        with self._lock:
            return copy.deepcopy(
                [c for c in self._comments if (c.thread_id, c.workspace, c.base_ref, c.merge_base, c.head) == scope]
            )

    # ------------------------------------------------------------------ #
    # Threads                                                              #
    # ------------------------------------------------------------------ #

    def create_thread(self, title: str, workspace: Optional[str] = None) -> Thread:
        thread = Thread(id=str(uuid.uuid4()), title=title, workspace=workspace, created_at=utc_now())
        with self._lock:
            self._threads[thread.id] = thread
            self._messages[thread.id] = []
        return copy.deepcopy(thread)

    def load_thread(self, thread_id: str) -> Thread:
        with self._lock:
            if thread_id not in self._threads:
                raise RecordNotFoundError(f"Thread {thread_id} was not found.")
            return copy.deepcopy(self._threads[thread_id])

    def persist_message(self, thread_id: str, role: str, content: str) -> Optional[Message]:
        if not content or not content.strip():
            return None
        if role not in MESSAGE_ROLES:
            raise ValueError(f"Unexpected message role: {role}")
        with self._lock:
            if thread_id not in self._threads:
                raise RecordNotFoundError(f"Thread {thread_id} was not found.")
            message = Message(
                id=self._next_message_id,
                thread_id=thread_id,
                role=role,
                content=content,
                created_at=utc_now(),
            )
            self._next_message_id += 1
            self._messages[thread_id].append(message)
            return copy.deepcopy(message)

    def list_messages(self, thread_id: str) -> list[Message]:
        with self._lock:
            return copy.deepcopy(self._messages.get(thread_id, []))
