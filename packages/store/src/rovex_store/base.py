"""Abstract store interfaces.

The run queue depends on BaseRunStore and the executor on BaseThreadStore,
never on a concrete backend, so MemoryStore and SQLiteStore are swappable
without touching rovex_core.

The snapshot mutation rules (merge_progress, apply_status, apply_result) are
defined here once so every backend applies progress events and lifecycle
transitions identically. Backends only decide how to load and save a run
atomically around them.
"""

from __future__ import annotations

import dataclasses
import itertools
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from rovex_store.models import (
    EVENT_CHUNK_FAILED,
    TERMINAL_STATUSES,
    InlineComment,
    RunCounters,
    can_transition,
)

if TYPE_CHECKING:
    from rovex_store.models import Message, ProgressEvent, ReviewResult, ReviewRun, Thread

logger = logging.getLogger(__name__)

DEFAULT_MAX_PROGRESS_EVENTS = 200
DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 200


class RecordNotFoundError(KeyError):
    """Raised when a run or thread id is unknown to the store."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Record not found."


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_LIST_LIMIT
    return max(1, min(int(limit), MAX_LIST_LIMIT))


def counters_of(run: ReviewRun) -> RunCounters:
    return RunCounters(
        total_chunks=run.total_chunks,
        completed_chunks=run.completed_chunks,
        failed_chunks=run.failed_chunks,
        finding_count=run.finding_count,
    )


def merge_progress(run: ReviewRun, event: ProgressEvent, max_events: int) -> bool:
    """Fold one progress event into a run snapshot in place.

    - the event's chunk replaces the stored chunk with the same id (or is
      inserted), then chunks are re-sorted by (file_path, chunk_index)
    - the event's finding is appended only if its id is new
    - counters follow the event; failed_chunks grows only on chunk-failed
    - the event joins the history, oldest entries dropped past max_events

    Once a run is terminal only terminal notifications are recorded, and
    they touch nothing but the history. Returns False if the event was
    ignored.
    """
    if run.is_terminal:
        if event.status not in TERMINAL_STATUSES:
            return False
        _append_event(run, event, max_events)
        return True

    if event.chunk is not None:
        chunks = [c for c in run.chunks if c.id != event.chunk.id]
        chunks.append(event.chunk)
        chunks.sort(key=lambda c: (c.file_path, c.chunk_index))
        run.chunks = chunks

    if event.finding is not None and all(f.id != event.finding.id for f in run.findings):
        run.findings.append(event.finding)

    if event.status == EVENT_CHUNK_FAILED:
        run.failed_chunks += 1

    run.total_chunks = event.total_chunks
    run.completed_chunks = event.completed_chunks
    run.finding_count = len(run.findings)
    _append_event(run, event, max_events)
    return True


def _append_event(run: ReviewRun, event: ProgressEvent, max_events: int) -> None:
    run.progress_events.append(event)
    overflow = len(run.progress_events) - max(1, max_events)
    if overflow > 0:
        del run.progress_events[:overflow]


def apply_status(
    run: ReviewRun,
    status: str,
    error: Optional[str] = None,
    mark_started: bool = False,
    mark_ended: bool = False,
    mark_canceled: bool = False,
) -> bool:
    """Move a run to ``status`` if the lifecycle allows it.

    Disallowed transitions (including anything out of a terminal state)
    leave the snapshot untouched and return False.
    """
    if run.status != status and not can_transition(run.status, status):
        logger.debug("Ignoring transition %s -> %s for %s", run.status, status, run.run_id)
        return False
    if run.status == status and run.is_terminal:
        return False

    now = utc_now()
    run.status = status
    if error is not None:
        run.error = error
    if mark_started and run.started_at is None:
        run.started_at = now
    if mark_ended and run.ended_at is None:
        run.ended_at = now
    if mark_canceled and run.canceled_at is None:
        run.canceled_at = now
    return True


def apply_result(run: ReviewRun, result: ReviewResult, status: str, error: Optional[str] = None) -> bool:
    """Write the executor's final result into a running snapshot."""
    if not apply_status(run, status, error=error, mark_ended=True):
        return False
    run.model = result.model
    run.review = result.review
    run.diff_chars_used = result.diff_chars_used
    run.diff_chars_total = result.diff_chars_total
    run.diff_truncated = result.diff_truncated
    run.chunks = sorted(result.chunks, key=lambda c: (c.file_path, c.chunk_index))
    run.findings = list(result.findings)
    run.finding_count = len(run.findings)
    return True


class InvalidCommentError(ValueError):
    """Raised when an inline comment is missing its anchor or body."""


_COMMENT_SIDES = {
    "additions": "additions",
    "addition": "additions",
    "added": "additions",
    "deletions": "deletions",
    "deletion": "deletions",
    "removed": "deletions",
}
_comment_counter = itertools.count(1)


def normalize_comment_side(raw: Optional[str]) -> Optional[str]:
    return _COMMENT_SIDES.get((raw or "").strip().lower())


def prepare_inline_comment(comment: InlineComment) -> InlineComment:
    """Validate a new comment and return a normalized copy with id and timestamps.

    - workspace, base ref, merge base, head, file path and body are required
    - sides accept additions/addition/added and deletions/deletion/removed
    - an end line without an end side reuses the start side, and an end
      side without an end line spans the start line
    - a same-side range given backwards is swapped
    - a range that collapses to the start line is stored as a single line
    """
    required = (
        ("workspace", "Workspace"),
        ("base_ref", "Base ref"),
        ("merge_base", "Merge base"),
        ("head", "Head ref"),
        ("file_path", "File path"),
    )
    values = {}
    for attr, label in required:
        value = (getattr(comment, attr) or "").strip()
        if not value:
            raise InvalidCommentError(f"{label} is required for inline comments.")
        values[attr] = value

    side = normalize_comment_side(comment.side)
    if side is None:
        raise InvalidCommentError("Comment side must be 'additions' or 'deletions'.")
    if comment.line_number <= 0:
        raise InvalidCommentError("Comment line number must be positive.")

    line_number = comment.line_number
    end_side = normalize_comment_side(comment.end_side)
    end_line = comment.end_line_number
    if end_line is not None and end_side is None:
        end_side = side
    if end_line is not None and end_line <= 0:
        raise InvalidCommentError("Comment end line number must be positive.")
    if end_line is None and end_side is not None:
        end_line = line_number
    if end_side == side and end_line is not None and end_line < line_number:
        line_number, end_line = end_line, line_number
    if end_side == side and end_line == line_number:
        end_side, end_line = None, None

    body = (comment.body or "").strip()
    if not body:
        raise InvalidCommentError("Comment body must not be empty.")

    now = utc_now()
    return dataclasses.replace(
        comment,
        **values,
        side=side,
        line_number=line_number,
        end_side=end_side,
        end_line_number=end_line,
        body=body,
        author=(comment.author or "").strip() or "You",
        id=f"comment-{int(time.time() * 1000)}-{next(_comment_counter)}",
        created_at=now,
        updated_at=now,
    )


def comment_scope_complete(workspace: str, base_ref: str, merge_base: str, head: str) -> bool:
    """Listing needs the full comparison; a partial one matches nothing."""
    return all(v and v.strip() for v in (workspace, base_ref, merge_base, head))


class BaseRunStore(ABC):
    """Pluggable persistence for review runs.

    Every method must be atomic per call from the caller's perspective:
    two progress events for the same run never interleave their
    read-modify-write.
    """

    @abstractmethod
    def create_run(self, run: ReviewRun) -> None:
        """Persist a freshly queued run."""

    @abstractmethod
    def append_progress(self, run_id: str, event: ProgressEvent) -> RunCounters:
        """Fold a progress event into the stored snapshot and return its counters."""

    @abstractmethod
    def set_status(
        self,
        run_id: str,
        status: str,
        error: Optional[str] = None,
        mark_started: bool = False,
        mark_ended: bool = False,
        mark_canceled: bool = False,
    ) -> bool:
        """Apply a lifecycle transition. Returns False if it was not allowed."""

    @abstractmethod
    def finalize(self, run_id: str, result: ReviewResult, status: str, error: Optional[str] = None) -> bool:
        """Store the final result and terminal status. Returns False if the run already ended."""

    @abstractmethod
    def load_run(self, run_id: str) -> ReviewRun:
        """Return a snapshot of one run. Raises RecordNotFoundError if unknown."""

    @abstractmethod
    def list_runs(self, thread_id: Optional[str] = None, limit: Optional[int] = None) -> list[ReviewRun]:
        """Return runs newest first, optionally scoped to a thread.

        ``limit`` defaults to 50 and is clamped to 1..200.
        """

    @abstractmethod
    def create_inline_comment(self, comment: InlineComment) -> InlineComment:
        """Validate with prepare_inline_comment, persist, and return the stored comment.

        Raises InvalidCommentError for unusable input.
        """

    @abstractmethod
    def list_inline_comments(
        self, thread_id: str, workspace: str, base_ref: str, merge_base: str, head: str
    ) -> list[InlineComment]:
        """Return a thread's comments on one comparison, oldest first.

        An incomplete comparison returns an empty list.
        """

    def close(self) -> None:
        """Release any resources held by the store (connections, file handles).

        Default is a no-op so callers can always call close() safely.
        """


class BaseThreadStore(ABC):
    """Conversation log the executor records review requests and narratives into."""

    @abstractmethod
    def create_thread(self, title: str, workspace: Optional[str] = None) -> Thread:
        """Create and return a new thread."""

    @abstractmethod
    def load_thread(self, thread_id: str) -> Thread:
        """Return a thread. Raises RecordNotFoundError if unknown."""

    @abstractmethod
    def persist_message(self, thread_id: str, role: str, content: str) -> Optional[Message]:
        """Append a message to a thread. Blank content is a no-op returning None."""

    @abstractmethod
    def list_messages(self, thread_id: str) -> list[Message]:
        """Return a thread's messages oldest first."""

    def close(self) -> None:
        """Release any resources held by the store."""
