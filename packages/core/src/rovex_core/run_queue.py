"""Run lifecycle: queueing, admission control, cancellation and persistence.

Lifecycle of one run:

    start_run()  → validate, persist as queued, return the snapshot
    background   → wait for an execution slot (raced against cancel)
                 → running → ReviewExecutor.execute()
                 → completed | completed_with_errors | failed | canceled

Slots come from one semaphore shared by every run this queue owns; it is
the only backpressure. Each live run has a CancelHandle in the registry
from start_run until its terminal state is written.

Every progress event is folded into the stored snapshot before it is
handed to subscribers, so a listener that reloads the run always sees
that event applied. A failed write is logged and the event is still
delivered, so storage trouble never aborts a run. Terminal events are
only published when the store accepted the terminal transition, which
makes a cancel racing a finishing run produce exactly one terminal
status and one terminal event.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from rovex_core.errors import PreconditionError, RunCanceledError, RunNotFoundError
from rovex_core.executor import ReviewExecutor, ReviewRequest, prepare_chunks
from rovex_core.utils.text import non_empty
from rovex_store.base import (
    BaseRunStore,
    BaseThreadStore,
    RecordNotFoundError,
    utc_now,
)
from rovex_store.models import (
    EVENT_DESCRIPTION_DELTA,
    STATUS_CANCELED,
    STATUS_FAILED,
    STATUS_QUEUED,
    STATUS_RUNNING,
    ProgressEvent,
    ReviewRun,
)

logger = logging.getLogger(__name__)

Listener = Callable[[ProgressEvent], None]

DEFAULT_MAX_PARALLEL_RUNS = 8
DEFAULT_RUN_GOAL = "Review changed files and report actionable bugs."
STATUS_CANCELING = "canceling"

_QUEUED_MESSAGE = "Review queued and waiting for an execution slot."
_CANCELED_BEFORE_MESSAGE = "Run canceled before execution."
_CANCELED_MESSAGE = "AI review run canceled."


class CancelHandle:
    """One-shot cancellation flag whose event also wakes waiters."""

    def __init__(self) -> None:
        self.event = asyncio.Event()

    @property
    def canceled(self) -> bool:
        return self.event.is_set()

    def cancel(self) -> None:
        self.event.set()


@dataclass(frozen=True)
class CancelResult:
    canceled: bool
    status: str


class RunQueue:
    """Owns the admission semaphore, the cancel registry and every run task."""

    def __init__(
        self,
        executor: ReviewExecutor,
        store: BaseRunStore,
        thread_store: BaseThreadStore,
        max_parallel_runs: int = DEFAULT_MAX_PARALLEL_RUNS,
    ):
        self.executor = executor
        self.store = store
        self.thread_store = thread_store
        self.max_parallel_runs = max(1, max_parallel_runs)
        self._slots = asyncio.Semaphore(self.max_parallel_runs)
        self._handles: dict[str, CancelHandle] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._listeners: list[Listener] = []
        self._counter = itertools.count(1)

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    async def start_run(self, request: ReviewRequest) -> ReviewRun:
        """Persist a queued run and schedule it. Returns without waiting for a slot.

        Raises PreconditionError if the thread is unknown or the diff has
        nothing to review; no run is recorded in that case.
        """
        try:
            self.thread_store.load_thread(request.thread_id)
        except RecordNotFoundError as e:
            raise PreconditionError(str(e)) from e
        chunks = prepare_chunks(request)
        if not non_empty(request.prompt):
            request.prompt = DEFAULT_RUN_GOAL

        run_id = self._next_run_id()
        run = ReviewRun(
            run_id=run_id,
            thread_id=request.thread_id,
            workspace=request.workspace,
            base_ref=request.base_ref,
            merge_base=request.merge_base,
            head=request.head,
            files_changed=request.files_changed,
            insertions=request.insertions,
            deletions=request.deletions,
            prompt=request.prompt,
            scope_label=request.scope_label,
            status=STATUS_QUEUED,
            total_chunks=len(chunks),
            created_at=utc_now(),
        )
        self.store.create_run(run)
        handle = CancelHandle()
        self._handles[run_id] = handle
        logger.info("Queued review run %s (%d file(s))", run_id, len(chunks))

        await self._emit(
            ProgressEvent(
                run_id=run_id,
                thread_id=request.thread_id,
                status=STATUS_QUEUED,
                message=_QUEUED_MESSAGE,
                total_chunks=len(chunks),
            )
        )
        task = asyncio.create_task(self._drive(run_id, request, handle))
        self._tasks[run_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(run_id, None))
        return self.store.load_run(run_id)

    async def cancel_run(self, run_id: str) -> CancelResult:
        """Request cancellation.

        A queued run is canceled on the spot; a running run is flagged and
        stops at the executor's next checkpoint. Runs that already ended
        are reported with their stored status.
        """
        handle = self._handles.get(run_id)
        if handle is None:
            return CancelResult(canceled=False, status=self.get_run(run_id).status)

        handle.cancel()
        run = self.get_run(run_id)
        if run.status == STATUS_QUEUED:
            await self._finish_canceled(run_id, run.thread_id, _CANCELED_BEFORE_MESSAGE)
            return CancelResult(canceled=True, status=STATUS_CANCELED)
        if run.status == STATUS_RUNNING:
            return CancelResult(canceled=True, status=STATUS_CANCELING)
        return CancelResult(canceled=True, status=run.status)

    def get_run(self, run_id: str) -> ReviewRun:
        try:
            return self.store.load_run(run_id)
        except RecordNotFoundError:
            raise RunNotFoundError(f"Run {run_id} was not found.") from None

    def list_runs(self, thread_id: Optional[str] = None, limit: Optional[int] = None) -> list[ReviewRun]:
        return self.store.list_runs(thread_id=thread_id, limit=limit)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a progress listener. Returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def wait(self, run_id: str) -> ReviewRun:
        """Wait for a run's background task, then return its stored snapshot."""
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.shield(task)
        return self.get_run(run_id)

    async def aclose(self) -> None:
        """Wait for every scheduled run to reach a terminal state."""
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.executor.aclose()

    # ------------------------------------------------------------------ #
    # Internals                                                            #
    # ------------------------------------------------------------------ #

    def _next_run_id(self) -> str:
        return f"run-{int(time.time() * 1000)}-{next(self._counter)}"

    async def _drive(self, run_id: str, request: ReviewRequest, handle: CancelHandle) -> None:
        try:
            if not await self._acquire_slot(handle):
                await self._finish_canceled(run_id, request.thread_id, _CANCELED_BEFORE_MESSAGE)
                return
            try:
                await self._execute(run_id, request, handle)
            finally:
                self._slots.release()
        finally:
            self._handles.pop(run_id, None)

    async def _acquire_slot(self, handle: CancelHandle) -> bool:
        """Race slot acquisition against cancellation. True means a slot is held."""
        if handle.canceled:
            return False
        acquire = asyncio.create_task(self._slots.acquire())
        canceled = asyncio.create_task(handle.event.wait())
        await asyncio.wait({acquire, canceled}, return_when=asyncio.FIRST_COMPLETED)
        canceled.cancel()
        if not acquire.done():
            acquire.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await acquire
        if acquire.done() and not acquire.cancelled():
            if not handle.canceled:
                return True
            self._slots.release()
        return False

    async def _execute(self, run_id: str, request: ReviewRequest, handle: CancelHandle) -> None:
        if not self.store.set_status(run_id, STATUS_RUNNING, mark_started=True):
            # Canceled between acquiring the slot and starting.
            return
        logger.info("Review run %s started", run_id)
        try:
            outcome = await self.executor.execute(run_id, request, self._emit, handle.event)
        except RunCanceledError:
            await self._finish_canceled(run_id, request.thread_id, _CANCELED_MESSAGE)
            return
        except Exception as e:
            logger.exception("Review run %s failed", run_id)
            message = str(e) or e.__class__.__name__
            if self.store.set_status(run_id, STATUS_FAILED, error=message, mark_ended=True):
                await self._publish_terminal(run_id, request.thread_id, STATUS_FAILED, message)
            return

        if self.store.finalize(run_id, outcome.result, outcome.status):
            logger.info("Review run %s finished: %s", run_id, outcome.status)
            await self._emit(
                ProgressEvent(
                    run_id=run_id,
                    thread_id=request.thread_id,
                    status=outcome.status,
                    message=outcome.message,
                    total_chunks=outcome.total_chunks,
                    completed_chunks=outcome.completed_chunks,
                )
            )

    async def _finish_canceled(self, run_id: str, thread_id: str, message: str) -> None:
        if self.store.set_status(run_id, STATUS_CANCELED, error=message, mark_ended=True, mark_canceled=True):
            logger.info("Review run %s canceled", run_id)
            await self._publish_terminal(run_id, thread_id, STATUS_CANCELED, message)

    async def _publish_terminal(self, run_id: str, thread_id: str, status: str, message: str) -> None:
        run = self.store.load_run(run_id)
        await self._emit(
            ProgressEvent(
                run_id=run_id,
                thread_id=thread_id,
                status=status,
                message=message,
                total_chunks=run.total_chunks,
                completed_chunks=run.completed_chunks,
            )
        )

    async def _emit(self, event: ProgressEvent) -> None:
        # Description increments go to live listeners only.
        if event.status != EVENT_DESCRIPTION_DELTA:
            try:
                self.store.append_progress(event.run_id, event)
            except Exception as e:
                logger.warning("Failed to persist %s event for %s: %s", event.status, event.run_id, e)
        self._broadcast(event)

    def _broadcast(self, event: ProgressEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Progress listener failed for %s", event.run_id)
