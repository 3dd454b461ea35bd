"""
Rolling-batch scheduler for page analysis tasks.

A fixed pool of ``concurrency_limit`` workers drains a FIFO of pending tasks.
Whenever a task settles its worker records the outcome and immediately takes
the next pending task, so while tasks remain the number in flight stays at
``min(remaining, concurrency_limit)``. Launch order follows the task list;
completion order is whatever the tasks produce.
"""
from __future__ import annotations
import asyncio
import inspect
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from .models import AnalysisTask, BatchProgress, BatchResult, TaskFailure

logger = logging.getLogger(__name__)

TaskRunner = Callable[[AnalysisTask], Awaitable[Any]]
CancelCheck = Callable[[], Union[bool, Awaitable[bool]]]
ProgressCallback = Callable[[BatchProgress], Union[None, Awaitable[None]]]


async def maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class RollingBatchScheduler:
    """Run analysis tasks with at most ``concurrency_limit`` in flight.

    A task's exception is caught and recorded as a ``TaskFailure``; it never
    affects sibling tasks. ``should_cancel`` is consulted before every launch;
    once it answers True no further task starts, running tasks finish, and the
    tasks never started are reported in ``BatchResult.not_run``.
    ``on_progress`` receives a ``BatchProgress`` after every settlement. The
    reports are delivered in settlement order by a separate task, and ``run``
    returns only after the last one has been handled.
    """

    def __init__(
        self,
        runner: TaskRunner,
        concurrency_limit: int = 5,
        should_cancel: Optional[CancelCheck] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        self.runner = runner
        self.concurrency_limit = concurrency_limit
        self.should_cancel = should_cancel
        self.on_progress = on_progress
        self._pending: deque[AnalysisTask] = deque()
        self._in_flight = 0
        self._cancelled = False
        self._result: Optional[BatchResult] = None
        self._progress: Optional[asyncio.Queue] = None

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def _check_cancel(self) -> bool:
        if self._cancelled:
            return True
        if self.should_cancel is None:
            return False
        try:
            self._cancelled = bool(await maybe_await(self.should_cancel()))
        except Exception:
            logger.exception("Cancellation check failed; continuing batch")
            return False
        if self._cancelled:
            logger.warning("Batch cancelled with %d task(s) not started", len(self._pending))
        return self._cancelled

    def _queue_progress(self, result: BatchResult) -> None:
        if self._progress is None:
            return
        self._progress.put_nowait(BatchProgress(
            completed_count=result.completed_count,
            total_count=result.total,
            succeeded=result.succeeded,
            failed=result.failed,
        ))

    async def _report_progress(self) -> None:
        # runs beside the workers so a slow callback never holds a task slot
        while True:
            progress = await self._progress.get()
            if progress is None:
                return
            try:
                await maybe_await(self.on_progress(progress))
            except Exception:
                logger.exception("Progress callback failed")

    async def _run_one(self, task: AnalysisTask, result: BatchResult) -> None:
        task_id = task.task_id
        self._in_flight += 1
        try:
            value = await self.runner(task)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = str(e) or type(e).__name__
            logger.warning("Task %s failed: %s", task_id, reason)
            result.failed += 1
            result.failures.append(TaskFailure(task_id=task_id, reason=reason))
        else:
            result.succeeded += 1
            result.results[task_id] = value
        finally:
            self._in_flight -= 1

    async def _worker(self, result: BatchResult) -> None:
        while self._pending:
            if await self._check_cancel():
                return
            # re-check: another worker may have drained the queue while we awaited
            if not self._pending:
                return
            task = self._pending.popleft()
            await self._run_one(task, result)
            self._queue_progress(result)

    async def run(self, tasks: Iterable[AnalysisTask]) -> BatchResult:
        if self._result is not None:
            raise RuntimeError("RollingBatchScheduler instances are single-use")
        self._pending.extend(tasks)
        result = BatchResult(total=len(self._pending))
        self._result = result
        logger.info("Batch started: %d task(s), concurrency %d", result.total, self.concurrency_limit)

        reporter = None
        if self.on_progress is not None:
            self._progress = asyncio.Queue()
            reporter = asyncio.create_task(self._report_progress())
        workers = [
            asyncio.create_task(self._worker(result))
            for _ in range(min(self.concurrency_limit, len(self._pending)))
        ]
        try:
            await asyncio.gather(*workers)
            if reporter is not None:
                self._progress.put_nowait(None)
                await reporter
        finally:
            for t in workers + [reporter]:
                if t is not None and not t.done():
                    t.cancel()

        if self._pending:
            result.cancelled = True
            result.not_run = [task.task_id for task in self._pending]
            self._pending.clear()
        logger.info(
            "Batch finished: %s (succeeded=%d, failed=%d, not_run=%d)",
            result.status.value, result.succeeded, result.failed, len(result.not_run),
        )
        return result


async def run_batch(
    tasks: Iterable[AnalysisTask],
    runner: TaskRunner,
    concurrency_limit: int = 5,
    should_cancel: Optional[CancelCheck] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> BatchResult:
    scheduler = RollingBatchScheduler(runner, concurrency_limit, should_cancel, on_progress)
    return await scheduler.run(tasks)
