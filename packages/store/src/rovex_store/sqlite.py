"""SQLiteStore: local file-based store for review runs and threads.

Why SQLite as the local store:
- Batteries included: ships with Python, no extra dependencies.
- One file per workspace, so `rovex runs` and `rovex show` can replay
  past runs without a server.
- Transactions give the per-event atomicity append_progress needs.

Schema:
  ai_review_runs: one row per run. Chunks, findings and the capped
                  progress history are JSON text columns, since they are
                  always read and written together with the run.
  threads:        conversations that own runs.
  messages:       review requests and final narratives per thread.
  inline_review_comments: reviewer notes per thread, keyed by the
                  compared workspace, base ref, merge base and head.
"""

from __future__ import annotations

import json
import logging
import sqlite3
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
    ReviewChunk,
    ReviewFinding,
    ReviewResult,
    ReviewRun,
    RunCounters,
    Thread,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS threads (
    id          TEXT PRIMARY KEY,
    title       TEXT NOT NULL,
    workspace   TEXT,
    created_at  TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS messages (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    thread_id   TEXT NOT NULL REFERENCES threads (id),
    role        TEXT NOT NULL CHECK (role IN ('system', 'user', 'assistant')),
    content     TEXT NOT NULL,
    created_at  TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS ai_review_runs (
    run_id                TEXT PRIMARY KEY,
    thread_id             TEXT NOT NULL,
    workspace             TEXT NOT NULL,
    base_ref              TEXT NOT NULL,
    merge_base            TEXT NOT NULL,
    head                  TEXT NOT NULL,
    files_changed         INTEGER DEFAULT 0,
    insertions            INTEGER DEFAULT 0,
    deletions             INTEGER DEFAULT 0,
    prompt                TEXT,
    scope_label           TEXT,
    status                TEXT NOT NULL,
    total_chunks          INTEGER DEFAULT 0,
    completed_chunks      INTEGER DEFAULT 0,
    failed_chunks         INTEGER DEFAULT 0,
    finding_count         INTEGER DEFAULT 0,
    model                 TEXT,
    review                TEXT,
    diff_chars_used       INTEGER,
    diff_chars_total      INTEGER,
    diff_truncated        INTEGER DEFAULT 0,
    error                 TEXT,
    chunks_json           TEXT DEFAULT '[]',
    findings_json         TEXT DEFAULT '[]',
    progress_events_json  TEXT DEFAULT '[]',
    created_at            TEXT NOT NULL,
    started_at            TEXT,
    ended_at              TEXT,
    canceled_at           TEXT
);
CREATE TABLE IF NOT EXISTS inline_review_comments (
    id               TEXT PRIMARY KEY,
    thread_id        TEXT NOT NULL REFERENCES threads (id),
    workspace        TEXT NOT NULL,
    base_ref         TEXT NOT NULL,
    merge_base       TEXT NOT NULL,
    head             TEXT NOT NULL,
    file_path        TEXT NOT NULL,
    side             TEXT NOT NULL CHECK (side IN ('additions', 'deletions')),
    line_number      INTEGER NOT NULL,
    end_side         TEXT,
    end_line_number  INTEGER,
    body             TEXT NOT NULL,
    author           TEXT NOT NULL,
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_runs_thread  ON ai_review_runs (thread_id, created_at);
CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages (thread_id, id);
CREATE INDEX IF NOT EXISTS idx_comments_scope ON inline_review_comments (thread_id, workspace, base_ref, merge_base, head);
"""

_RUN_COLUMNS = (
    "run_id",
    "thread_id",
    "workspace",
    "base_ref",
    "merge_base",
    "head",
    "files_changed",
    "insertions",
    "deletions",
    "prompt",
    "scope_label",
    "status",
    "total_chunks",
    "completed_chunks",
    "failed_chunks",
    "finding_count",
    "model",
    "review",
    "diff_chars_used",
    "diff_chars_total",
    "diff_truncated",
    "error",
    "chunks_json",
    "findings_json",
    "progress_events_json",
    "created_at",
    "started_at",
    "ended_at",
    "canceled_at",
)

_COMMENT_COLUMNS = (
    "id",
    "thread_id",
    "workspace",
    "base_ref",
    "merge_base",
    "head",
    "file_path",
    "side",
    "line_number",
    "end_side",
    "end_line_number",
    "body",
    "author",
    "created_at",
    "updated_at",
)


class SQLiteStore(BaseRunStore, BaseThreadStore):
    """Stores review runs and threads in a local SQLite database file.

    The database file path defaults to `.rovex.db` in the current working
    directory. Configure via .rovex.yml: `store_path: /path/to/rovex.db`.
    """

    def __init__(self, db_path: str = ".rovex.db", max_progress_events: int = DEFAULT_MAX_PROGRESS_EVENTS):
        self._max_events = max_progress_events
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    # ------------------------------------------------------------------ #
    # Runs                                                                 #
    # ------------------------------------------------------------------ #

    def create_run(self, run: ReviewRun) -> None:
        if not run.created_at:
            run.created_at = utc_now()
        placeholders = ", ".join("?" for _ in _RUN_COLUMNS)
        with self._lock, self._conn:
            self._conn.execute(
                f"INSERT INTO ai_review_runs ({', '.join(_RUN_COLUMNS)}) VALUES ({placeholders})",
                self._run_to_row(run),
            )

    def append_progress(self, run_id: str, event: ProgressEvent) -> RunCounters:
        with self._lock, self._conn:
            run = self._load(run_id)
            if merge_progress(run, event, self._max_events):
                self._save(run)
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
        with self._lock, self._conn:
            run = self._load(run_id)
            applied = apply_status(
                run,
                status,
                error=error,
                mark_started=mark_started,
                mark_ended=mark_ended,
                mark_canceled=mark_canceled,
            )
            if applied:
                self._save(run)
            return applied

    def finalize(self, run_id: str, result: ReviewResult, status: str, error: Optional[str] = None) -> bool:
        with self._lock, self._conn:
            run = self._load(run_id)
            applied = apply_result(run, result, status, error=error)
            if applied:
                self._save(run)
            return applied

    def load_run(self, run_id: str) -> ReviewRun:
        with self._lock:
            return self._load(run_id)

    def list_runs(self, thread_id: Optional[str] = None, limit: Optional[int] = None) -> list[ReviewRun]:
        with self._lock:
            if thread_id is not None:
                rows = self._conn.execute(
                    "SELECT * FROM ai_review_runs WHERE thread_id=? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                    (thread_id, clamp_limit(limit)),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM ai_review_runs ORDER BY created_at DESC, rowid DESC LIMIT ?",
                    (clamp_limit(limit),),
                ).fetchall()
        return [self._row_to_run(r) for r in rows]

    def close(self) -> None:
        self._conn.close()

    def _load(self, run_id: str) -> ReviewRun:
        row = self._conn.execute("SELECT * FROM ai_review_runs WHERE run_id=?", (run_id,)).fetchone()
        if row is None:
            raise RecordNotFoundError(f"Review run {run_id} was not found.")
        return self._row_to_run(row)

    def _save(self, run: ReviewRun) -> None:
        columns = _RUN_COLUMNS[1:]
        assignments = ", ".join(f"{c}=?" for c in columns)
        values = self._run_to_row(run)[1:]
        self._conn.execute(f"UPDATE ai_review_runs SET {assignments} WHERE run_id=?", (*values, run.run_id))

    @staticmethod
    def _run_to_row(run: ReviewRun) -> tuple:
        return (
            run.run_id,
            run.thread_id,
            run.workspace,
            run.base_ref,
            run.merge_base,
            run.head,
            run.files_changed,
            run.insertions,
            run.deletions,
            run.prompt,
            run.scope_label,
            run.status,
            run.total_chunks,
            run.completed_chunks,
            run.failed_chunks,
            run.finding_count,
            run.model,
            run.review,
            run.diff_chars_used,
            run.diff_chars_total,
            int(run.diff_truncated),
            run.error,
            json.dumps([c.to_dict() for c in run.chunks]),
            json.dumps([f.to_dict() for f in run.findings]),
            json.dumps([e.to_dict() for e in run.progress_events]),
            run.created_at,
            run.started_at,
            run.ended_at,
            run.canceled_at,
        )

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> ReviewRun:
        return ReviewRun(
            run_id=row["run_id"],
            thread_id=row["thread_id"],
            workspace=row["workspace"],
            base_ref=row["base_ref"],
            merge_base=row["merge_base"],
            head=row["head"],
            files_changed=row["files_changed"] or 0,
            insertions=row["insertions"] or 0,
            deletions=row["deletions"] or 0,
            prompt=row["prompt"],
            scope_label=row["scope_label"],
            status=row["status"],
            total_chunks=row["total_chunks"] or 0,
            completed_chunks=row["completed_chunks"] or 0,
            failed_chunks=row["failed_chunks"] or 0,
            finding_count=row["finding_count"] or 0,
            model=row["model"],
            review=row["review"],
            diff_chars_used=row["diff_chars_used"],
            diff_chars_total=row["diff_chars_total"],
            diff_truncated=bool(row["diff_truncated"]),
            error=row["error"],
            chunks=[ReviewChunk.from_dict(c) for c in json.loads(row["chunks_json"] or "[]")],
            findings=[ReviewFinding.from_dict(f) for f in json.loads(row["findings_json"] or "[]")],
            progress_events=[ProgressEvent.from_dict(e) for e in json.loads(row["progress_events_json"] or "[]")],
            created_at=row["created_at"],
            started_at=row["started_at"],
            ended_at=row["ended_at"],
            canceled_at=row["canceled_at"],
        )

    # ------------------------------------------------------------------ #
    # Inline comments                                                      #
    # ------------------------------------------------------------------ #

    def create_inline_comment(self, comment: InlineComment) -> InlineComment:
        c = prepare_inline_comment(comment)
        with self._lock, self._conn:
            exists = self._conn.execute("SELECT 1 FROM threads WHERE id=?", (c.thread_id,)).fetchone()
            if exists is None:
                raise RecordNotFoundError(f"Thread {c.thread_id} was not found.")
            self._conn.execute(
                f"INSERT INTO inline_review_comments ({', '.join(_COMMENT_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _COMMENT_COLUMNS)})",
                tuple(getattr(c, col) for col in _COMMENT_COLUMNS),
            )
        return c

    def list_inline_comments(
        self, thread_id: str, workspace: str, base_ref: str, merge_base: str, head: str
    ) -> list[InlineComment]:
        if not comment_scope_complete(workspace, base_ref, merge_base, head):
            return []
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM inline_review_comments "
                "WHERE thread_id=? AND workspace=? AND base_ref=? AND merge_base=? AND head=? "
                "ORDER BY created_at, rowid",
                (thread_id, workspace.strip(), base_ref.strip(), merge_base.strip(), head.strip()),
            ).fetchall()
        return [InlineComment(**{col: r[col] for col in _COMMENT_COLUMNS}) for r in rows]

    # ------------------------------------------------------------------ #
    # Threads                                                              #
    # ------------------------------------------------------------------ #

    def create_thread(self, title: str, workspace: Optional[str] = None) -> Thread:
        thread = Thread(id=str(uuid.uuid4()), title=title, workspace=workspace, created_at=utc_now())
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO threads (id, title, workspace, created_at) VALUES (?, ?, ?, ?)",
                (thread.id, thread.title, thread.workspace, thread.created_at),
            )
        return thread

    def load_thread(self, thread_id: str) -> Thread:
        with self._lock:
            row = self._conn.execute("SELECT * FROM threads WHERE id=?", (thread_id,)).fetchone()
        if row is None:
            raise RecordNotFoundError(f"Thread {thread_id} was not found.")
        return Thread(id=row["id"], title=row["title"], workspace=row["workspace"], created_at=row["created_at"])

    def persist_message(self, thread_id: str, role: str, content: str) -> Optional[Message]:
        if not content or not content.strip():
            return None
        if role not in MESSAGE_ROLES:
            raise ValueError(f"Unexpected message role: {role}")
        created_at = utc_now()
        with self._lock, self._conn:
            exists = self._conn.execute("SELECT 1 FROM threads WHERE id=?", (thread_id,)).fetchone()
            if exists is None:
                raise RecordNotFoundError(f"Thread {thread_id} was not found.")
            cursor = self._conn.execute(
                "INSERT INTO messages (thread_id, role, content, created_at) VALUES (?, ?, ?, ?)",
                (thread_id, role, content, created_at),
            )
        return Message(id=cursor.lastrowid, thread_id=thread_id, role=role, content=content, created_at=created_at)

    def list_messages(self, thread_id: str) -> list[Message]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM messages WHERE thread_id=? ORDER BY id",
                (thread_id,),
            ).fetchall()
        return [
            Message(
                id=r["id"],
                thread_id=r["thread_id"],
                role=r["role"],
                content=r["content"],
                created_at=r["created_at"],
            )
            for r in rows
        ]
