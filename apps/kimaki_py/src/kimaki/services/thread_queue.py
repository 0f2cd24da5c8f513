from __future__ import annotations

import asyncio
import enum
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

DEFAULT_INTERRUPT_TIMEOUT_MS = 2000

ABORT_REASON_NEXT_STEP = "next-step"
ABORT_REASON_TIMEOUT = "next-step-timeout"
ABORT_REASON_CANCELLED = "cancelled"
ABORT_REASON_SHUTDOWN = "shutdown"


class WorkOutcome(str, enum.Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"
    SUPERSEDED = "superseded"
    FAILED = "failed"


@dataclass(slots=True)
class ThreadWorkItem:
    thread_id: str
    prompt: str
    author_id: str = ""
    message: Any = None
    received_at: float = field(default_factory=time.time)


class WorkItemAborted(Exception):
    def __init__(self, reason: str):
        super().__init__(f"work item aborted: {reason}")
        self.reason = reason


class InterruptToken:
    """Cancellation token shared by the checkpoint path and the watchdog.

    `abort` succeeds exactly once; the losing path sees False and does nothing.
    """

    def __init__(self) -> None:
        self._interrupt_requested = False
        self._abort_reason: str | None = None

    @property
    def interrupt_requested(self) -> bool:
        return self._interrupt_requested

    @property
    def aborted(self) -> bool:
        return self._abort_reason is not None

    @property
    def abort_reason(self) -> str | None:
        return self._abort_reason

    def request_interrupt(self) -> bool:
        if self._interrupt_requested:
            return False
        self._interrupt_requested = True
        return True

    def abort(self, reason: str) -> bool:
        if self._abort_reason is not None:
            return False
        self._abort_reason = reason
        return True


class TurnContext:
    def __init__(self, token: InterruptToken):
        self.token = token

    async def checkpoint(self) -> None:
        """Call at step boundaries; raises WorkItemAborted when a newer item is waiting."""
        if self.token.aborted:
            raise WorkItemAborted(self.token.abort_reason or ABORT_REASON_NEXT_STEP)
        if self.token.interrupt_requested and self.token.abort(ABORT_REASON_NEXT_STEP):
            raise WorkItemAborted(ABORT_REASON_NEXT_STEP)


WorkRunner = Callable[[ThreadWorkItem, TurnContext], Awaitable[None]]
FailureHandler = Callable[[ThreadWorkItem, Exception], Awaitable[None]]


@dataclass(slots=True)
class _Queued:
    item: ThreadWorkItem
    future: asyncio.Future[WorkOutcome]


@dataclass(slots=True)
class _Running:
    item: ThreadWorkItem
    token: InterruptToken
    task: asyncio.Task[None]
    watchdog: asyncio.TimerHandle | None = None


class ThreadWorker:
    """Owns one thread's mailbox and its single running item."""

    def __init__(self, thread_id: str, serializer: ThreadRequestSerializer):
        self.thread_id = thread_id
        self._serializer = serializer
        self._mailbox: deque[_Queued] = deque()
        self._current: _Running | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def busy(self) -> bool:
        return self._current is not None

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"kimaki-thread-{self.thread_id}")

    def post(self, queued: _Queued) -> None:
        self._mailbox.append(queued)
        if self._current is not None:
            self._interrupt(self._current)

    def _interrupt(self, running: _Running) -> None:
        if not running.token.request_interrupt():
            return
        self._serializer.logger.info(
            "Interrupting running work item.",
            thread_id=self.thread_id,
            queued=len(self._mailbox),
        )
        running.watchdog = asyncio.get_running_loop().call_later(
            self._serializer.interrupt_timeout_ms / 1000,
            self._force_abort,
            running,
        )

    def _force_abort(self, running: _Running) -> None:
        if running.task.done():
            return
        if running.token.abort(ABORT_REASON_TIMEOUT):
            running.task.cancel()

    async def _run(self) -> None:
        try:
            while self._mailbox:
                queued = self._take_latest()
                outcome = await self._run_item(queued.item)
                _resolve(queued.future, outcome)
        finally:
            self._serializer._worker_finished(self)

    def _take_latest(self) -> _Queued:
        latest = self._mailbox.pop()
        while self._mailbox:
            stale = self._mailbox.popleft()
            self._serializer.logger.info(
                "Superseded queued work item.", thread_id=self.thread_id
            )
            _resolve(stale.future, WorkOutcome.SUPERSEDED)
        return latest

    async def _run_item(self, item: ThreadWorkItem) -> WorkOutcome:
        token = InterruptToken()
        task = asyncio.create_task(
            self._serializer.runner(item, TurnContext(token)),
            name=f"kimaki-turn-{self.thread_id}",
        )
        running = _Running(item=item, token=token, task=task)
        self._current = running
        failure: Exception | None = None
        try:
            try:
                await task
            except WorkItemAborted:
                pass
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise
                token.abort(ABORT_REASON_CANCELLED)
            except Exception as exc:
                failure = exc
        finally:
            if running.watchdog is not None:
                running.watchdog.cancel()
            self._current = None

        if token.aborted:
            self._serializer.logger.info(
                "Work item aborted.", thread_id=self.thread_id, reason=token.abort_reason
            )
            return WorkOutcome.ABORTED
        if failure is not None:
            await self._serializer._report_failure(item, failure)
            return WorkOutcome.FAILED
        return WorkOutcome.COMPLETED

    async def shutdown(self) -> None:
        while self._mailbox:
            _resolve(self._mailbox.popleft().future, WorkOutcome.SUPERSEDED)
        running = self._current
        if running is not None and running.token.abort(ABORT_REASON_SHUTDOWN):
            running.task.cancel()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)


class ThreadRequestSerializer:
    """Runs work items one at a time per thread; a newer item preempts the running one.

    The running item stops at its next checkpoint, or is cancelled when the
    interrupt timeout expires first.
    """

    def __init__(
        self,
        runner: WorkRunner,
        logger: Any,
        *,
        interrupt_timeout_ms: int = DEFAULT_INTERRUPT_TIMEOUT_MS,
        on_error: FailureHandler | None = None,
    ):
        self.runner = runner
        self.logger = logger
        self.interrupt_timeout_ms = interrupt_timeout_ms
        self.on_error = on_error
        self._workers: dict[str, ThreadWorker] = {}

    def submit(self, item: ThreadWorkItem) -> asyncio.Future[WorkOutcome]:
        future: asyncio.Future[WorkOutcome] = asyncio.get_running_loop().create_future()
        worker = self._workers.get(item.thread_id)
        if worker is None:
            worker = ThreadWorker(item.thread_id, self)
            self._workers[item.thread_id] = worker
            worker.post(_Queued(item=item, future=future))
            worker.start()
        else:
            worker.post(_Queued(item=item, future=future))
        return future

    def is_busy(self, thread_id: str) -> bool:
        worker = self._workers.get(thread_id)
        return worker is not None and worker.busy

    @property
    def active_threads(self) -> list[str]:
        return list(self._workers)

    async def shutdown(self) -> None:
        workers = list(self._workers.values())
        for worker in workers:
            await worker.shutdown()

    def _worker_finished(self, worker: ThreadWorker) -> None:
        if self._workers.get(worker.thread_id) is worker:
            del self._workers[worker.thread_id]

    async def _report_failure(self, item: ThreadWorkItem, exc: Exception) -> None:
        self.logger.error(
            "Work item failed.", thread_id=item.thread_id, error=str(exc) or type(exc).__name__
        )
        if self.on_error is None:
            return
        try:
            await self.on_error(item, exc)
        except Exception as report_exc:
            self.logger.warning(
                "Failed to report work item failure.",
                thread_id=item.thread_id,
                error=str(report_exc),
            )


def _resolve(future: asyncio.Future[WorkOutcome], outcome: WorkOutcome) -> None:
    if not future.done():
        future.set_result(outcome)
