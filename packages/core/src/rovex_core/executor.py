"""Concurrent review execution for one run.

Two activities progress at the same time and are merged by a single loop:

  description  one narrative call over the whole (truncated) diff; its
               increments arrive on a queue, followed by one close marker
  chunks       a pool of at most ``max_parallel_chunks`` workers, one
               structured call (with retries) per file-level chunk

The merge loop is the only writer of run-local state (chunk reviews,
findings, counters) and emits exactly one progress event per state change
through the async ``emit`` callback, so events for a run have one total
order. It blocks on asyncio.wait over the queue reader, the live workers
and the cancellation event; nothing polls.

Cancellation is cooperative. The flag is checked before each dispatch,
before each provider attempt and on every loop iteration; once seen, the
run aborts with RunCanceledError and partial results are discarded.
Provider calls already in flight are left to finish on their own.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from rovex_core.config import DEFAULT_CONFIG, ReviewProvider, resolve_provider
from rovex_core.diff_chunks import DiffChunk, format_workspace_file_context, parse_diff_file_chunks
from rovex_core.errors import PreconditionError, RunCanceledError
from rovex_core.payload import build_chunk_review
from rovex_core.prompts import (
    DEFAULT_REVIEWER_GOAL,
    build_chunk_prompt,
    build_description_prompt,
    build_request_message,
)
from rovex_core.providers.base import BaseTransport
from rovex_core.utils.text import non_empty, snippet, truncate_chars
from rovex_store.base import BaseThreadStore, RecordNotFoundError
from rovex_store.models import (
    EVENT_CHUNK_COMPLETE,
    EVENT_CHUNK_FAILED,
    EVENT_CHUNK_START,
    EVENT_DESCRIPTION_COMPLETE,
    EVENT_DESCRIPTION_DELTA,
    EVENT_DESCRIPTION_FAILED,
    EVENT_DESCRIPTION_START,
    EVENT_FINDING,
    EVENT_STARTED,
    STATUS_COMPLETED,
    STATUS_COMPLETED_WITH_ERRORS,
    ProgressEvent,
    ReviewChunk,
    ReviewFinding,
    ReviewResult,
)

logger = logging.getLogger(__name__)

EmitFn = Callable[[ProgressEvent], Awaitable[None]]
TransportFactory = Callable[[str], BaseTransport]

_DESCRIPTION_ERROR_CHARS = 300
_CHUNK_ERROR_CHARS = 320
_RUN_NOTE_ERROR_CHARS = 240


@dataclass
class ReviewRequest:
    """What to review: a diff plus the comparison it came from."""

    thread_id: str
    workspace: str
    base_ref: str
    merge_base: str
    head: str
    diff: str
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0
    prompt: Optional[str] = None
    scope_label: Optional[str] = None


@dataclass
class ReviewSettings:
    provider: ReviewProvider
    model: str
    timeout_ms: int
    max_diff_chars: int
    max_parallel_chunks: int

    @classmethod
    def from_config(cls, config: dict) -> ReviewSettings:
        return cls(
            provider=resolve_provider(config.get("provider")),
            model=config.get("model") or DEFAULT_CONFIG["model"],
            timeout_ms=int(config.get("timeout_ms") or DEFAULT_CONFIG["timeout_ms"]),
            max_diff_chars=int(config.get("max_diff_chars") or DEFAULT_CONFIG["max_diff_chars"]),
            max_parallel_chunks=max(1, int(config.get("max_parallel_chunks") or DEFAULT_CONFIG["max_parallel_chunks"])),
        )


@dataclass
class ExecutionOutcome:
    """A finished run: the result to store plus its terminal status and message."""

    result: ReviewResult
    status: str
    message: str
    total_chunks: int
    completed_chunks: int


@dataclass
class _ChunkJob:
    ordinal: int
    chunk: DiffChunk
    patch: str
    patch_truncated: bool


@dataclass
class _ChunkOutcome:
    job: _ChunkJob
    raw: Optional[str] = None
    error: Optional[str] = None


class _DescriptionClosed:
    """Queue marker: the description activity ended (text or error)."""

    def __init__(self, text: Optional[str], error: Optional[str]):
        self.text = text
        self.error = error


def get_transport(config: dict, workspace: str) -> BaseTransport:
    """Build the configured transport for one run in ``workspace``."""
    provider = resolve_provider(config.get("provider"))
    if provider is ReviewProvider.OPENAI:
        from rovex_core.providers.openai import OpenAITransport

        return OpenAITransport(api_key=config.get("openai_api_key"), base_url=config.get("base_url") or DEFAULT_CONFIG["base_url"])
    if provider is ReviewProvider.OPENCODE:
        from rovex_core.providers.opencode import OpencodeTransport

        return OpencodeTransport(
            workspace=workspace,
            command=config.get("opencode_command") or DEFAULT_CONFIG["opencode_command"],
            hostname=config.get("opencode_hostname") or DEFAULT_CONFIG["opencode_hostname"],
            port=int(config.get("opencode_port") or DEFAULT_CONFIG["opencode_port"]),
            server_timeout_ms=int(config.get("opencode_server_timeout_ms") or DEFAULT_CONFIG["opencode_server_timeout_ms"]),
            agent=config.get("opencode_agent") or DEFAULT_CONFIG["opencode_agent"],
            configured_model=config.get("opencode_model"),
            provider=config.get("opencode_provider") or DEFAULT_CONFIG["opencode_provider"],
        )
    from rovex_core.providers.app_server import AppServerTransport

    return AppServerTransport(
        workspace=workspace,
        command=config.get("app_server_command") or DEFAULT_CONFIG["app_server_command"],
    )


def prepare_chunks(request: ReviewRequest) -> list[DiffChunk]:
    """Validate a request and split its diff into file-level review units.

    Raises PreconditionError before any work starts if the request cannot
    be reviewed.
    """
    if not request.workspace.strip():
        raise PreconditionError("Workspace path must not be empty.")
    if not (request.base_ref.strip() and request.merge_base.strip() and request.head.strip()):
        raise PreconditionError("Comparison metadata is incomplete. Refresh diff and try again.")
    if not request.diff.strip():
        raise PreconditionError("There are no changes to review.")
    chunks = parse_diff_file_chunks(request.diff)
    if not chunks:
        raise PreconditionError("No reviewable changed files were found in this diff.")
    return chunks


def _consume_result(task: asyncio.Task) -> None:
    # Detached tasks of a canceled run; their outcome is discarded.
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Discarded result of detached review task: %s", task.exception())


class ReviewExecutor:
    """Drives one review run to completion.

    Holds no per-run state, so one instance serves every run of a RunQueue.
    """

    def __init__(
        self,
        settings: ReviewSettings,
        thread_store: BaseThreadStore,
        transport_factory: TransportFactory,
    ):
        self.settings = settings
        self.thread_store = thread_store
        self.transport_factory = transport_factory
        self._background: set[asyncio.Task] = set()

    async def execute(
        self,
        run_id: str,
        request: ReviewRequest,
        emit: EmitFn,
        cancel_event: asyncio.Event,
    ) -> ExecutionOutcome:
        try:
            self.thread_store.load_thread(request.thread_id)
        except RecordNotFoundError as e:
            raise PreconditionError(str(e)) from e
        chunks = prepare_chunks(request)

        self.thread_store.persist_message(request.thread_id, "user", build_request_message(request.prompt))

        transport = self.transport_factory(request.workspace)
        run = _RunLoop(self, transport, run_id, request, chunks, emit, cancel_event)
        try:
            outcome = await run.run()
        except BaseException:
            self._close_when_idle(transport, run.detached_tasks())
            raise
        await transport.aclose()

        self.thread_store.persist_message(request.thread_id, "assistant", outcome.result.review)
        return outcome

    def _close_when_idle(self, transport: BaseTransport, tasks: list[asyncio.Task]) -> None:
        """Close the transport once the calls left running by an aborted run finish."""
        for task in tasks:
            task.add_done_callback(_consume_result)

        async def close() -> None:
            if tasks:
                await asyncio.wait(tasks)
            await transport.aclose()

        closer = asyncio.create_task(close())
        self._background.add(closer)
        closer.add_done_callback(self._background.discard)

    async def aclose(self) -> None:
        """Wait for transports of aborted runs to be closed."""
        if self._background:
            await asyncio.wait(set(self._background))


class _RunLoop:
    """State and merge loop of a single execution."""

    def __init__(
        self,
        executor: ReviewExecutor,
        transport: BaseTransport,
        run_id: str,
        request: ReviewRequest,
        chunks: list[DiffChunk],
        emit: EmitFn,
        cancel_event: asyncio.Event,
    ):
        self.settings = executor.settings
        self.transport = transport
        self.run_id = run_id
        self.request = request
        self.emit_fn = emit
        self.cancel_event = cancel_event
        self.goal = non_empty(request.prompt) or DEFAULT_REVIEWER_GOAL

        self.total = len(chunks)
        self.completed = 0
        self.failed = 0
        self.chunk_reviews: list[ReviewChunk] = []
        self.findings: list[ReviewFinding] = []
        self.description_parts: list[str] = []

        self.diff_chars_total = len(request.diff)
        self.diff_chars_used = 0
        self.diff_truncated = False
        self.pending: deque[_ChunkJob] = deque()
        for ordinal, chunk in enumerate(chunks, start=1):
            patch, truncated = truncate_chars(chunk.patch, self.settings.max_diff_chars)
            self.diff_truncated |= truncated
            self.diff_chars_used += len(patch)
            self.pending.append(_ChunkJob(ordinal, chunk, patch, truncated))
        self.description_diff, description_truncated = truncate_chars(request.diff, self.settings.max_diff_chars)
        self.diff_truncated |= description_truncated

        self.deltas: asyncio.Queue = asyncio.Queue()
        self.description_task: Optional[asyncio.Task] = None
        self.workers: dict[asyncio.Task, _ChunkJob] = {}

    def detached_tasks(self) -> list[asyncio.Task]:
        tasks = [t for t in self.workers if not t.done()]
        if self.description_task is not None and not self.description_task.done():
            tasks.append(self.description_task)
        return tasks

    async def emit(self, status: str, message: str, chunk: Optional[ReviewChunk] = None, finding: Optional[ReviewFinding] = None) -> None:
        await self.emit_fn(
            ProgressEvent(
                run_id=self.run_id,
                thread_id=self.request.thread_id,
                status=status,
                message=message,
                total_chunks=self.total,
                completed_chunks=self.completed,
                chunk=chunk,
                finding=finding,
            )
        )

    def check_canceled(self) -> None:
        if self.cancel_event.is_set():
            raise RunCanceledError()

    # ------------------------------------------------------------------ #
    # Merge loop                                                           #
    # ------------------------------------------------------------------ #

    async def run(self) -> ExecutionOutcome:
        self.check_canceled()
        await self.emit(
            EVENT_STARTED,
            f"Started review. Description stream and file issue checks are running for {self.total} file(s).",
        )
        await self.emit(EVENT_DESCRIPTION_START, "Generating high-level description...")
        self.description_task = asyncio.create_task(self._describe())

        description_open = True
        description_text = ""
        description_error: Optional[str] = None
        reader = asyncio.create_task(self.deltas.get())
        cancel_waiter = asyncio.create_task(self.cancel_event.wait())
        try:
            await self._dispatch()
            while description_open or self.workers or self.pending:
                self.check_canceled()
                waiting = {cancel_waiter, *self.workers}
                if description_open:
                    waiting.add(reader)
                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                self.check_canceled()

                if reader in done:
                    item = reader.result()
                    if isinstance(item, _DescriptionClosed):
                        description_open = False
                        description_text, description_error = await self._close_description(item)
                    else:
                        self.description_parts.append(item)
                        await self.emit(EVENT_DESCRIPTION_DELTA, item)
                        reader = asyncio.create_task(self.deltas.get())

                finished = sorted((t for t in done if t in self.workers), key=lambda t: self.workers[t].ordinal)
                for task in finished:
                    self.workers.pop(task)
                    # A canceled worker re-raises RunCanceledError here.
                    await self._record_chunk(task.result())
                    self.check_canceled()

                await self._dispatch()
        finally:
            reader.cancel()
            cancel_waiter.cancel()

        return await self._finish(description_text, description_error)

    async def _dispatch(self) -> None:
        while self.pending and len(self.workers) < self.settings.max_parallel_chunks:
            self.check_canceled()
            job = self.pending.popleft()
            await self.emit(
                EVENT_CHUNK_START,
                f"Reviewing {job.chunk.file_path} (file {job.ordinal} of {self.total}).",
            )
            self.workers[asyncio.create_task(self._review_chunk(job))] = job

    async def _close_description(self, item: _DescriptionClosed) -> tuple[str, Optional[str]]:
        if item.error is not None:
            await self.emit(
                EVENT_DESCRIPTION_FAILED,
                f"Description stream failed: {snippet(item.error, _DESCRIPTION_ERROR_CHARS)}",
            )
            return "", item.error
        text = (item.text or "").strip()
        if text and not self.description_parts:
            # Transports without incremental delivery hand over the whole text at once.
            self.description_parts.append(text)
            await self.emit(EVENT_DESCRIPTION_DELTA, text)
        await self.emit(EVENT_DESCRIPTION_COMPLETE, "Generated high-level description.")
        return text, None

    async def _record_chunk(self, outcome: _ChunkOutcome) -> None:
        chunk = outcome.job.chunk
        if outcome.error is not None:
            self.completed += 1
            self.failed += 1
            await self.emit(
                EVENT_CHUNK_FAILED,
                f"File review failed for {chunk.file_path} (file {chunk.chunk_index}): "
                f"{snippet(outcome.error, _CHUNK_ERROR_CHARS)}",
            )
            return

        review = build_chunk_review(chunk, outcome.raw or "")
        for finding in review.findings:
            await self.emit(EVENT_FINDING, f"{finding.file_path}:{finding.line_number} {finding.title}", finding=finding)
        self.completed += 1
        self.findings.extend(review.findings)
        self.chunk_reviews.append(review)
        await self.emit(
            EVENT_CHUNK_COMPLETE,
            f"Completed {chunk.file_path} with {len(review.findings)} finding(s).",
            chunk=review,
        )

    async def _finish(self, description_text: str, description_error: Optional[str]) -> ExecutionOutcome:
        self.chunk_reviews.sort(key=lambda c: (c.file_path, c.chunk_index))
        self.findings.sort(key=lambda f: (f.file_path, f.line_number, f.id))

        review = description_text.strip() or f"Analyzed {self.total} file(s). Found {len(self.findings)} issue(s)."
        had_errors = self.failed > 0 or description_error is not None
        if had_errors:
            review += "\n\n## Run Notes"
            if self.failed:
                review += f"\n- {self.failed} file(s) failed during issue checks and were skipped after retries."
            if description_error is not None:
                review += f"\n- High-level description stream failed: {snippet(description_error, _RUN_NOTE_ERROR_CHARS)}"

        result = ReviewResult(
            model=self.transport.describe_model(self.settings.model),
            review=review,
            diff_chars_used=min(self.diff_chars_used, self.diff_chars_total) if self.diff_truncated else self.diff_chars_total,
            diff_chars_total=self.diff_chars_total,
            diff_truncated=self.diff_truncated,
            chunks=self.chunk_reviews,
            findings=self.findings,
            had_errors=had_errors,
        )
        return ExecutionOutcome(
            result=result,
            status=STATUS_COMPLETED_WITH_ERRORS if had_errors else STATUS_COMPLETED,
            message=(
                f"File review complete: {self.total} file(s), {len(self.findings)} finding(s), "
                f"{self.failed} failed file(s)."
            ),
            total_chunks=self.total,
            completed_chunks=self.completed,
        )

    # ------------------------------------------------------------------ #
    # Activities                                                           #
    # ------------------------------------------------------------------ #

    async def _describe(self) -> None:
        prompt = build_description_prompt(
            self.goal,
            self.request.workspace,
            self.request.base_ref,
            self.request.merge_base,
            self.request.head,
            self.description_diff,
            self.diff_truncated,
        )
        text: Optional[str] = None
        error: Optional[str] = None
        try:
            text = await self.transport.generate_narrative(
                prompt,
                self.settings.model,
                self.settings.timeout_ms,
                on_delta=self.deltas.put_nowait,
            )
        except Exception as e:
            logger.warning("Description stream failed for %s: %s", self.run_id, e)
            error = str(e) or e.__class__.__name__
        finally:
            self.deltas.put_nowait(_DescriptionClosed(text, error))

    async def _review_chunk(self, job: _ChunkJob) -> _ChunkOutcome:
        try:
            context = await asyncio.to_thread(format_workspace_file_context, self.request.workspace, job.chunk)
            prompt = build_chunk_prompt(
                self.goal,
                self.request.workspace,
                self.request.base_ref,
                self.request.merge_base,
                self.request.head,
                job.chunk,
                job.patch,
                job.patch_truncated,
                context,
            )
            raw = await self.transport.generate_structured_with_retry(
                prompt,
                self.settings.model,
                self.settings.timeout_ms,
                cancel_event=self.cancel_event,
            )
        except RunCanceledError:
            raise
        except Exception as e:
            return _ChunkOutcome(job, error=str(e) or e.__class__.__name__)
        return _ChunkOutcome(job, raw=raw)
