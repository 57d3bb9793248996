"""Review run data models.

Decoupled from rovex_core so the store layer can be used independently
and rovex_core only sees plain records, never persistence details.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Optional

# Run status values.
STATUS_QUEUED = "queued"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_COMPLETED_WITH_ERRORS = "completed_with_errors"
STATUS_FAILED = "failed"
STATUS_CANCELED = "canceled"

TERMINAL_STATUSES = frozenset(
    {STATUS_COMPLETED, STATUS_COMPLETED_WITH_ERRORS, STATUS_FAILED, STATUS_CANCELED}
)

# Allowed forward transitions. Terminal statuses have no outgoing edges.
STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_QUEUED: frozenset({STATUS_RUNNING, STATUS_CANCELED}),
    STATUS_RUNNING: TERMINAL_STATUSES,
}

# Progress event tags.
EVENT_QUEUED = "queued"
EVENT_STARTED = "started"
EVENT_DESCRIPTION_START = "description-start"
EVENT_DESCRIPTION_DELTA = "description-delta"
EVENT_DESCRIPTION_COMPLETE = "description-complete"
EVENT_DESCRIPTION_FAILED = "description-failed"
EVENT_CHUNK_START = "chunk-start"
EVENT_CHUNK_COMPLETE = "chunk-complete"
EVENT_CHUNK_FAILED = "chunk-failed"
EVENT_FINDING = "finding"

MESSAGE_ROLES = ("system", "user", "assistant")


def can_transition(current: str, target: str) -> bool:
    """Return True if a run in ``current`` may move to ``target``."""
    return target in STATUS_TRANSITIONS.get(current, frozenset())


@dataclass
class ReviewFinding:
    """One reported issue, pinned to a line that exists in its chunk."""

    id: str
    file_path: str
    chunk_id: str
    chunk_index: int
    hunk_header: str
    side: str  # "additions" | "deletions"
    line_number: int
    title: str
    body: str
    severity: str = "medium"  # "critical" | "high" | "medium" | "low"
    confidence: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReviewFinding:
        return cls(
            id=data["id"],
            file_path=data.get("file_path", ""),
            chunk_id=data.get("chunk_id", ""),
            chunk_index=int(data.get("chunk_index", 0)),
            hunk_header=data.get("hunk_header", ""),
            side=data.get("side", "additions"),
            line_number=int(data.get("line_number", 0)),
            title=data.get("title", ""),
            body=data.get("body", ""),
            severity=data.get("severity", "medium"),
            confidence=data.get("confidence"),
        )


@dataclass
class ReviewChunk:
    """The reviewed form of one file-level diff chunk."""

    id: str
    file_path: str
    chunk_index: int
    hunk_header: str
    summary: str
    findings: list[ReviewFinding] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReviewChunk:
        return cls(
            id=data["id"],
            file_path=data.get("file_path", ""),
            chunk_index=int(data.get("chunk_index", 0)),
            hunk_header=data.get("hunk_header", ""),
            summary=data.get("summary", ""),
            findings=[ReviewFinding.from_dict(f) for f in data.get("findings", [])],
        )


@dataclass(frozen=True)
class ProgressEvent:
    """An immutable notification about a change in a run's progress."""

    run_id: str
    thread_id: str
    status: str
    message: str
    total_chunks: int = 0
    completed_chunks: int = 0
    chunk: Optional[ReviewChunk] = None
    finding: Optional[ReviewFinding] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProgressEvent:
        chunk = data.get("chunk")
        finding = data.get("finding")
        return cls(
            run_id=data.get("run_id", ""),
            thread_id=data.get("thread_id", ""),
            status=data.get("status", ""),
            message=data.get("message", ""),
            total_chunks=int(data.get("total_chunks", 0)),
            completed_chunks=int(data.get("completed_chunks", 0)),
            chunk=ReviewChunk.from_dict(chunk) if chunk else None,
            finding=ReviewFinding.from_dict(finding) if finding else None,
        )


@dataclass
class ReviewResult:
    """Aggregated output of one executed run, handed to ``finalize``."""

    model: str
    review: str
    diff_chars_used: int = 0
    diff_chars_total: int = 0
    diff_truncated: bool = False
    chunks: list[ReviewChunk] = field(default_factory=list)
    findings: list[ReviewFinding] = field(default_factory=list)
    had_errors: bool = False


@dataclass
class ReviewRun:
    """Persisted snapshot of a review run and its lifecycle.

    Only the run queue writes these; every other reader gets a copy.
    """

    run_id: str
    thread_id: str
    workspace: str
    base_ref: str
    merge_base: str
    head: str
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0
    prompt: Optional[str] = None
    scope_label: Optional[str] = None
    status: str = STATUS_QUEUED
    total_chunks: int = 0
    completed_chunks: int = 0
    failed_chunks: int = 0
    finding_count: int = 0
    model: Optional[str] = None
    review: Optional[str] = None
    diff_chars_used: Optional[int] = None
    diff_chars_total: Optional[int] = None
    diff_truncated: bool = False
    error: Optional[str] = None
    chunks: list[ReviewChunk] = field(default_factory=list)
    findings: list[ReviewFinding] = field(default_factory=list)
    progress_events: list[ProgressEvent] = field(default_factory=list)
    created_at: str = ""  # ISO-8601 UTC timestamps
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    canceled_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class Thread:
    """A conversation that owns review runs and their messages."""

    id: str
    title: str
    workspace: Optional[str] = None
    created_at: str = ""


@dataclass
class Message:
    id: int
    thread_id: str
    role: str  # "system" | "user" | "assistant"
    content: str
    created_at: str = ""


@dataclass(frozen=True)
class RunCounters:
    """Rolling counters returned after each persisted progress event."""

    total_chunks: int
    completed_chunks: int
    failed_chunks: int
    finding_count: int


@dataclass
class InlineComment:
    """A reviewer note pinned to a line range of one compared revision pair.

    Comments belong to a thread and are listed per comparison (workspace,
    base ref, merge base, head), so they disappear from view once the
    branch moves on.
    """

    thread_id: str
    workspace: str
    base_ref: str
    merge_base: str
    head: str
    file_path: str
    side: str  # "additions" | "deletions"
    line_number: int
    body: str
    author: str = "You"
    end_side: Optional[str] = None
    end_line_number: Optional[int] = None
    id: str = ""
    created_at: str = ""
    updated_at: str = ""
