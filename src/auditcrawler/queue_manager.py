"""
In-process named job queues with per-queue workers, retry and admission control.

Each queue owns its waiting/delayed/active lists and the retained
completed/failed records, guarded by the queue's own ``asyncio.Condition``.
Queues share nothing else, so a stalled queue never blocks another one.
Two independent knobs bound work:

- ``concurrency``: number of worker slots executing jobs at once;
- ``max_workers``: how many jobs may *start* within one rate-limit window
  (a sliding one-minute window by default).
"""
from __future__ import annotations
import asyncio
import inspect
import logging
import time
from collections import deque
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Type, Union

from .config import PLAN_TIERS, TIER_CONCURRENCY, QueueConfig, QueueConfigStore, tier_for_plan, tier_queue_name
from .errors import JobProcessingError, QueueFullError, QueueNotFoundError
from .models import Job, JobState, QueueStats

logger = logging.getLogger(__name__)

Processor = Callable[[Job], Union[Any, Awaitable[Any]]]

KEEP_COMPLETED = 100
KEEP_FAILED = 50
RATE_LIMIT_WINDOW = 60.0


class SlidingWindowLimiter:
    """At most ``max_events`` starts per ``window`` seconds. ``max_events <= 0`` disables it."""

    def __init__(self, max_events: int, window: float = RATE_LIMIT_WINDOW, clock: Callable[[], float] = time.monotonic):
        self.max_events = max_events
        self.window = window
        self._clock = clock
        self._events: deque[float] = deque()

    def _expire(self, now: float) -> None:
        while self._events and now - self._events[0] >= self.window:
            self._events.popleft()

    def delay(self) -> float:
        """Seconds until a start would be admitted (0 when one is available now)."""
        if self.max_events <= 0:
            return 0.0
        now = self._clock()
        self._expire(now)
        if len(self._events) < self.max_events:
            return 0.0
        return max(0.0, self._events[0] + self.window - now)

    def try_acquire(self) -> bool:
        if self.delay() > 0:
            return False
        if self.max_events > 0:
            self._events.append(self._clock())
        return True

    async def wait(self) -> None:
        delay = self.delay()
        while delay > 0:
            await asyncio.sleep(delay)
            delay = self.delay()


class ManagedQueue:
    """State of one named queue. Mutated only while holding ``cond``."""

    def __init__(self, name: str, config: QueueConfig, processor: Optional[Processor], payload_types: Tuple[type, ...],
                 keep_completed: int, keep_failed: int, rate_window: float):
        self.name = name
        self.config = config
        self.processor = processor
        self.payload_types = payload_types
        self.concurrency = max(1, config.concurrency)
        self.paused = not config.is_active
        self.closed = False
        self.cond = asyncio.Condition()
        self.waiting: deque[Job] = deque()
        self.delayed: Dict[str, Tuple[Job, asyncio.TimerHandle]] = {}
        self.active: Dict[str, Job] = {}
        self.completed: deque[Job] = deque(maxlen=keep_completed)
        self.failed: deque[Job] = deque(maxlen=keep_failed)
        self.limiter = SlidingWindowLimiter(config.max_workers, rate_window)
        self.workers: Dict[int, asyncio.Task] = {}
        self.promotions: Set[asyncio.Task] = set()
        self.processed_total = 0
        self.failed_total = 0

    def has_work_for(self, slot: int) -> bool:
        return not self.paused and bool(self.waiting) and slot < self.concurrency

    def stats(self) -> QueueStats:
        return QueueStats(
            queue_name=self.name,
            waiting=len(self.waiting),
            active=len(self.active),
            completed=len(self.completed),
            failed=len(self.failed),
            delayed=len(self.delayed),
            paused=self.paused,
            workers=self.config.concurrency,
            concurrency=self.concurrency,
        )


class QueueManager:
    """Named job queues over one in-process broker.

    Construct one per application and pass it to producers and to the memory
    monitor; there is no module-level instance. Configuration is re-read from
    ``config_store`` before each admission decision.
    """

    def __init__(
        self,
        config_store: QueueConfigStore | None = None,
        keep_completed: int = KEEP_COMPLETED,
        keep_failed: int = KEEP_FAILED,
        rate_window: float = RATE_LIMIT_WINDOW,
    ):
        self.config_store = config_store or QueueConfigStore()
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.rate_window = rate_window
        self._queues: Dict[str, ManagedQueue] = {}
        self._tier_paused: Set[str] = set()

    # ------------------ lifecycle ------------------

    def _get(self, queue_name: str) -> ManagedQueue:
        queue = self._queues.get(queue_name)
        if queue is None or queue.closed:
            raise QueueNotFoundError(queue_name)
        return queue

    @property
    def queue_names(self) -> List[str]:
        return [name for name, q in self._queues.items() if not q.closed]

    def has_queue(self, queue_name: str) -> bool:
        return queue_name in self.queue_names

    def get_config(self, queue_name: str) -> QueueConfig:
        return self._get(queue_name).config

    async def create_queue(
        self,
        queue_name: str,
        processor: Optional[Processor] = None,
        config: QueueConfig | None = None,
        payload_type: Union[Type, Tuple[Type, ...], None] = None,
    ) -> ManagedQueue:
        """Create ``queue_name`` or return the existing queue of that name.

        Workers start once a processor is attached; calling again with a
        processor on a processor-less queue attaches it.
        """
        queue = self._queues.get(queue_name)
        if queue is not None and not queue.closed:
            if processor is not None and queue.processor is None:
                queue.processor = processor
                self._spawn_workers(queue)
            return queue

        if config is not None:
            self.config_store.set(config)
        config = self.config_store.get(queue_name)
        if isinstance(payload_type, type):
            payload_types: Tuple[type, ...] = (payload_type,)
        else:
            payload_types = tuple(payload_type or ())
        queue = ManagedQueue(queue_name, config, processor, payload_types,
                             self.keep_completed, self.keep_failed, self.rate_window)
        self._queues[queue_name] = queue
        if processor is not None:
            self._spawn_workers(queue)
        logger.info("Queue '%s' created (concurrency=%d, max_workers=%d/%.0fs, paused=%s)",
                    queue_name, queue.concurrency, config.max_workers, self.rate_window, queue.paused)
        return queue

    def _spawn_workers(self, queue: ManagedQueue) -> None:
        if queue.processor is None:
            return
        for slot in range(queue.concurrency):
            task = queue.workers.get(slot)
            if task is None or task.done():
                queue.workers[slot] = asyncio.create_task(self._worker(queue, slot), name=f"{queue.name}-worker-{slot}")

    async def close(self, queue_name: str) -> None:
        """Stop workers and drop the queue. Jobs still waiting are removed."""
        queue = self._get(queue_name)
        async with queue.cond:
            queue.closed = True
            for job, handle in queue.delayed.values():
                handle.cancel()
                self._finish_removed(job)
            queue.delayed.clear()
            while queue.waiting:
                self._finish_removed(queue.waiting.popleft())
            queue.cond.notify_all()
        workers = list(queue.workers.values()) + list(queue.promotions)
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        del self._queues[queue_name]
        self._tier_paused.discard(queue_name)
        logger.info("Queue '%s' closed", queue_name)

    async def close_all(self) -> None:
        for name in list(self.queue_names):
            await self.close(name)
        logger.info("All queues closed")

    # ------------------ admission ------------------

    async def add_job(self, queue_name: str, payload: Any, delay: Optional[float] = None, attempts: Optional[int] = None) -> Job:
        """Admit a job without waiting for it to run.

        Raises QueueNotFoundError for unknown queues and QueueFullError when the
        queue already holds ``max_queue_size`` jobs waiting to run (delayed
        jobs included).
        """
        queue = self._get(queue_name)
        if queue.payload_types and not isinstance(payload, queue.payload_types):
            expected = ", ".join(t.__name__ for t in queue.payload_types)
            raise TypeError(f"Queue '{queue_name}' accepts {expected}, got {type(payload).__name__}")

        config = self.config_store.get(queue_name)
        queue.config = config
        queue.limiter.max_events = config.max_workers

        async with queue.cond:
            if len(queue.waiting) + len(queue.delayed) >= config.max_queue_size:
                logger.warning("Queue '%s' is full (%d jobs), rejecting job", queue_name, config.max_queue_size)
                raise QueueFullError(queue_name, config.max_queue_size)
            job = Job(queue_name=queue_name, payload=payload, max_attempts=max(1, attempts or config.retry_attempts))
            hold = config.delay_between_jobs if delay is None else delay
            if hold > 0:
                self._schedule(queue, job, hold)
            else:
                job.state = JobState.WAITING
                queue.waiting.append(job)
                queue.cond.notify_all()
        logger.debug("Job %s added to queue '%s'", job.id, queue_name)
        return job

    def _schedule(self, queue: ManagedQueue, job: Job, delay: float) -> None:
        job.state = JobState.DELAYED
        handle = asyncio.get_running_loop().call_later(delay, self._start_promotion, queue, job.id)
        queue.delayed[job.id] = (job, handle)

    def _start_promotion(self, queue: ManagedQueue, job_id: str) -> None:
        task = asyncio.create_task(self._promote(queue, job_id), name=f"{queue.name}-promote-{job_id}")
        queue.promotions.add(task)
        task.add_done_callback(lambda t: self._promotion_done(queue, t))

    @staticmethod
    def _promotion_done(queue: ManagedQueue, task: asyncio.Task) -> None:
        queue.promotions.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Promoting a delayed job in queue '%s' failed", queue.name, exc_info=task.exception())

    async def _promote(self, queue: ManagedQueue, job_id: str) -> None:
        async with queue.cond:
            entry = queue.delayed.pop(job_id, None)
            if entry is None or queue.closed:
                return
            job = entry[0]
            job.state = JobState.WAITING
            queue.waiting.append(job)
            queue.cond.notify_all()

    async def remove_job(self, queue_name: str, job_id: str) -> bool:
        """Remove a job that has not started yet. Running jobs cannot be removed."""
        queue = self._get(queue_name)
        async with queue.cond:
            entry = queue.delayed.pop(job_id, None)
            if entry is not None:
                entry[1].cancel()
                self._finish_removed(entry[0])
                return True
            for job in queue.waiting:
                if job.id == job_id:
                    queue.waiting.remove(job)
                    self._finish_removed(job)
                    return True
        return False

    @staticmethod
    def _finish_removed(job: Job) -> None:
        job.state = JobState.REMOVED
        job.error = "removed before execution"
        job.finished_at = time.time()
        job._done.set()

    async def wait_for(self, job: Job) -> Any:
        """Wait for ``job`` to settle; return its result or raise JobProcessingError."""
        await job._done.wait()
        if job.state is JobState.COMPLETED:
            return job.result
        raise JobProcessingError(job.id, job.queue_name, job.attempt, job.error)

    # ------------------ execution ------------------

    async def _worker(self, queue: ManagedQueue, slot: int) -> None:
        while True:
            async with queue.cond:
                await queue.cond.wait_for(lambda: queue.closed or slot >= queue.concurrency or queue.has_work_for(slot))
                if queue.closed or slot >= queue.concurrency:
                    queue.workers.pop(slot, None)
                    return
            await queue.limiter.wait()
            async with queue.cond:
                if not queue.has_work_for(slot) or not queue.limiter.try_acquire():
                    continue
                job = queue.waiting.popleft()
                job.state = JobState.ACTIVE
                job.attempt += 1
                queue.active[job.id] = job
            await self._execute(queue, job)

    async def _execute(self, queue: ManagedQueue, job: Job) -> None:
        started = time.monotonic()
        logger.debug("Processing job %s in queue '%s' (attempt %d/%d)", job.id, queue.name, job.attempt, job.max_attempts)
        try:
            result = queue.processor(job)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            async with queue.cond:
                queue.active.pop(job.id, None)
                if queue.closed:
                    self._finish_removed(job)
                else:
                    job.attempt -= 1
                    job.state = JobState.WAITING
                    queue.waiting.appendleft(job)
            raise
        except Exception as e:
            job.error = str(e) or type(e).__name__
            await self._on_failure(queue, job, time.monotonic() - started)
            await self._after_settle()
            return

        async with queue.cond:
            queue.active.pop(job.id, None)
            job.state = JobState.COMPLETED
            job.result = result
            job.error = None
            job.finished_at = time.time()
            queue.completed.append(job)
            queue.processed_total += 1
        job._done.set()
        logger.info("Job %s completed in queue '%s' in %.0fms", job.id, queue.name, (time.monotonic() - started) * 1000)
        await self._after_settle()

    async def _on_failure(self, queue: ManagedQueue, job: Job, elapsed: float) -> None:
        async with queue.cond:
            queue.active.pop(job.id, None)
            if job.attempt < job.max_attempts and not queue.closed:
                backoff = queue.config.retry_delay * (2 ** (job.attempt - 1))
                logger.warning("Job %s failed in queue '%s' after %.0fms (attempt %d/%d), retrying in %.2fs: %s",
                               job.id, queue.name, elapsed * 1000, job.attempt, job.max_attempts, backoff, job.error)
                if backoff > 0:
                    self._schedule(queue, job, backoff)
                else:
                    job.state = JobState.WAITING
                    queue.waiting.append(job)
                    queue.cond.notify_all()
                return
            job.state = JobState.FAILED
            job.finished_at = time.time()
            queue.failed.append(job)
            queue.failed_total += 1
        job._done.set()
        logger.error("Job %s in queue '%s' dead-lettered after %d attempt(s): %s",
                     job.id, queue.name, job.attempt, job.error)

    # ------------------ control ------------------

    async def pause(self, queue_name: str) -> None:
        """Stop handing jobs to workers. Admission continues and queued jobs are kept."""
        queue = self._get(queue_name)
        async with queue.cond:
            queue.paused = True
        logger.info("Queue '%s' paused", queue_name)

    async def resume(self, queue_name: str) -> None:
        queue = self._get(queue_name)
        async with queue.cond:
            queue.paused = False
            queue.cond.notify_all()
        logger.info("Queue '%s' resumed", queue_name)

    def is_paused(self, queue_name: str) -> bool:
        return self._get(queue_name).paused

    async def resize(self, queue_name: str, concurrency: int) -> None:
        """Change the number of worker slots. Surplus workers exit after their current job."""
        queue = self._get(queue_name)
        concurrency = max(1, concurrency)
        async with queue.cond:
            previous, queue.concurrency = queue.concurrency, concurrency
            queue.cond.notify_all()
        self._spawn_workers(queue)
        logger.info("Queue '%s' concurrency %d -> %d", queue_name, previous, concurrency)

    async def purge_completed(self, queue_name: str) -> int:
        """Drop retained completed-job records. Returns how many were dropped."""
        queue = self._get(queue_name)
        async with queue.cond:
            dropped = len(queue.completed)
            queue.completed.clear()
        logger.info("Queue '%s': purged %d completed job record(s)", queue_name, dropped)
        return dropped

    async def purge(self, queue_name: str) -> int:
        """Remove every job that is not running, plus retained records."""
        queue = self._get(queue_name)
        async with queue.cond:
            removed = len(queue.waiting) + len(queue.delayed)
            for job, handle in queue.delayed.values():
                handle.cancel()
                self._finish_removed(job)
            queue.delayed.clear()
            while queue.waiting:
                self._finish_removed(queue.waiting.popleft())
            queue.completed.clear()
            queue.failed.clear()
        logger.info("Queue '%s' purged (%d pending job(s) removed)", queue_name, removed)
        return removed

    # ------------------ plan tiers ------------------

    async def create_tier_queue(
        self,
        plan: str,
        processor: Optional[Processor] = None,
        payload_type: Union[Type, Tuple[Type, ...], None] = None,
    ) -> ManagedQueue:
        """Create the queue serving ``plan``'s tier, with that tier's worker concurrency."""
        tier = tier_for_plan(plan)
        name = tier_queue_name(tier)
        config = None
        if not self.has_queue(name):
            config = replace(self.config_store.get(name), queue_name=name, concurrency=TIER_CONCURRENCY[tier])
        return await self.create_queue(name, processor, config=config, payload_type=payload_type)

    async def add_priority_job(self, plan: str, payload: Any, delay: Optional[float] = None,
                               attempts: Optional[int] = None) -> Job:
        """Admit a job to its plan tier's queue and hold back every lower tier.

        Held-back queues are resumed once no higher tier has jobs waiting or
        running. Queues that were already paused are left alone.
        """
        tier = tier_for_plan(plan)
        job = await self.add_job(tier_queue_name(tier), payload, delay=delay, attempts=attempts)
        for lower in PLAN_TIERS[PLAN_TIERS.index(tier) + 1:]:
            name = tier_queue_name(lower)
            if not self.has_queue(name) or name in self._tier_paused or self.is_paused(name):
                continue
            await self.pause(name)
            self._tier_paused.add(name)
            logger.info("Queue '%s' held back for a %s job", name, tier)
        return job

    def _tier_busy(self, tier: str) -> bool:
        queue = self._queues.get(tier_queue_name(tier))
        return queue is not None and bool(queue.waiting or queue.active)

    async def resume_lower_tiers(self) -> List[str]:
        """Resume held-back tier queues whose higher tiers have gone idle."""
        resumed = []
        for index, tier in enumerate(PLAN_TIERS):
            name = tier_queue_name(tier)
            if name not in self._tier_paused:
                continue
            if any(self._tier_busy(higher) for higher in PLAN_TIERS[:index]):
                continue
            self._tier_paused.discard(name)
            await self.resume(name)
            resumed.append(name)
        return resumed

    async def _after_settle(self) -> None:
        if self._tier_paused:
            await self.resume_lower_tiers()

    def get_tier_stats(self) -> Dict[str, Dict[str, int]]:
        """Per-tier job counts plus their sum under ``total``; missing tier queues count as empty."""
        fields = ("waiting", "active", "completed", "failed", "delayed", "total")
        report: Dict[str, Dict[str, int]] = {}
        for tier in PLAN_TIERS:
            name = tier_queue_name(tier)
            stats = self.get_stats(name) if self.has_queue(name) else None
            report[tier] = {f: getattr(stats, f) if stats else 0 for f in fields}
        report["total"] = {f: sum(report[tier][f] for tier in PLAN_TIERS) for f in fields}
        return report

    # ------------------ stats ------------------

    def get_stats(self, queue_name: str) -> QueueStats:
        """Snapshot of the queue's counts; the counts are not read atomically together."""
        return self._get(queue_name).stats()

    def get_all_stats(self) -> List[QueueStats]:
        return [self._queues[name].stats() for name in self.queue_names]

    def get_jobs(self, queue_name: str, state: JobState) -> List[Job]:
        queue = self._get(queue_name)
        if state is JobState.WAITING:
            return list(queue.waiting)
        if state is JobState.DELAYED:
            return [job for job, _ in queue.delayed.values()]
        if state is JobState.ACTIVE:
            return list(queue.active.values())
        if state is JobState.COMPLETED:
            return list(queue.completed)
        if state is JobState.FAILED:
            return list(queue.failed)
        return []
