"""
Heuristic memory backpressure for the queue manager.

The estimate is a pure function of queue statistics, not an OS memory read:

    50 MB * workers + 15 MB * active + 5 MB * waiting + 2 MB * min(completed, 100)

The monitor only acts when the threshold level changes, so staying above a
threshold for many ticks issues a single pause per queue.
"""
from __future__ import annotations
import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Set

from .config import MonitorConfig
from .models import MemorySnapshot, QueueStats, ThresholdLevel
from .queue_manager import QueueManager

logger = logging.getLogger(__name__)

BASE_MB_PER_WORKER = 50
MB_PER_ACTIVE_JOB = 15
MB_PER_WAITING_JOB = 5
MB_PER_COMPLETED_JOB = 2
COMPLETED_CACHE_CAP = 100
TOTAL_MEMORY_MB = 8 * 1024


def estimate_queue_memory(stats: QueueStats) -> int:
    return round(
        stats.workers * BASE_MB_PER_WORKER
        + stats.active * MB_PER_ACTIVE_JOB
        + stats.waiting * MB_PER_WAITING_JOB
        + min(stats.completed, COMPLETED_CACHE_CAP) * MB_PER_COMPLETED_JOB
    )


def classify_level(total_mb: int, config: MonitorConfig) -> ThresholdLevel:
    if total_mb > config.emergency_mb:
        return ThresholdLevel.EMERGENCY
    if total_mb > config.critical_mb:
        return ThresholdLevel.CRITICAL
    if total_mb > config.warning_mb:
        return ThresholdLevel.WARNING
    return ThresholdLevel.OK


def build_snapshot(stats: Iterable[QueueStats], config: MonitorConfig) -> MemorySnapshot:
    per_queue = {s.queue_name: estimate_queue_memory(s) for s in stats}
    total = sum(per_queue.values())
    return MemorySnapshot(per_queue_estimate_mb=per_queue, total_estimate_mb=total,
                          threshold_level=classify_level(total, config))


def recommendations(snapshot: MemorySnapshot) -> List[str]:
    """Operator hints for a snapshot, matching the actions the monitor takes."""
    level = snapshot.threshold_level
    if level is ThresholdLevel.EMERGENCY:
        return ["Pause every queue except the highest-priority one",
                "Halve the highest-priority queue's concurrency",
                "Clear completed jobs from all queues"]
    if level is ThresholdLevel.CRITICAL:
        return ["Pause the lower-priority half of the queues",
                "Clear old completed jobs"]
    if level is ThresholdLevel.WARNING:
        return ["Memory usage high, monitor closely", "Consider reducing queue sizes"]
    return ["Memory usage is within safe limits"]


class MemoryMonitor:
    """Periodically estimates queue memory and pauses/resizes queues on level changes.

    Critical: the lower-priority half of the queues is paused and their
    completed-job records purged. Emergency: every queue but the highest
    priority one is paused and that queue's concurrency is halved. When the
    level falls back the monitor resumes only the queues it paused itself and
    restores the concurrency it reduced; queues an operator paused are left
    alone.
    """

    def __init__(self, manager: QueueManager, config: MonitorConfig | None = None):
        self.manager = manager
        self.config = config or MonitorConfig()
        self.level = ThresholdLevel.OK
        self.last_snapshot: Optional[MemorySnapshot] = None
        self._paused: Set[str] = set()
        self._reduced: Dict[str, int] = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def paused_queues(self) -> Set[str]:
        return set(self._paused)

    def snapshot(self) -> MemorySnapshot:
        return build_snapshot(self.manager.get_all_stats(), self.config)

    def memory_stats(self) -> dict:
        snap = self.last_snapshot or self.snapshot()
        used = snap.total_estimate_mb
        return {
            "total_memory_mb": TOTAL_MEMORY_MB,
            "used_memory_mb": used,
            "free_memory_mb": TOTAL_MEMORY_MB - used,
            "usage_percentage": round(used / TOTAL_MEMORY_MB * 100, 2),
            "queue_memory_mb": dict(snap.per_queue_estimate_mb),
            "level": snap.threshold_level.name.lower(),
            "recommendations": recommendations(snap),
        }

    def queue_memory_breakdown(self) -> List[dict]:
        """Per-queue estimates, largest first."""
        rows = [
            {
                "queue_name": s.queue_name,
                "estimated_memory_mb": estimate_queue_memory(s),
                "workers": s.workers,
                "active": s.active,
                "waiting": s.waiting,
            }
            for s in self.manager.get_all_stats()
        ]
        return sorted(rows, key=lambda r: r["estimated_memory_mb"], reverse=True)

    def _ordered_queues(self) -> List[str]:
        """Existing queues from highest to lowest priority; unlisted queues rank last."""
        names = self.manager.queue_names
        ordered = [name for name in self.config.priority if name in names]
        ordered.extend(sorted(name for name in names if name not in ordered))
        return ordered

    def _targets(self, level: ThresholdLevel) -> Set[str]:
        ordered = self._ordered_queues()
        if level is ThresholdLevel.EMERGENCY:
            return set(ordered[1:])
        if level is ThresholdLevel.CRITICAL:
            lower_half = len(ordered) // 2
            return set(ordered[len(ordered) - lower_half:]) if lower_half else set()
        return set()

    async def evaluate(self) -> MemorySnapshot:
        """Take a snapshot and act if the threshold level changed since the last one."""
        snap = self.snapshot()
        self.last_snapshot = snap
        level = snap.threshold_level
        if level is self.level:
            return snap

        logger.log(
            logging.WARNING if level.value > self.level.value else logging.INFO,
            "Memory estimate %d MB: level %s -> %s",
            snap.total_estimate_mb, self.level.name, level.name,
        )
        self.level = level
        await self._apply(level)
        return snap

    async def _apply(self, level: ThresholdLevel) -> None:
        targets = self._targets(level)
        names = set(self.manager.queue_names)

        for name in sorted(self._paused - targets):
            self._paused.discard(name)
            if name in names:
                await self.manager.resume(name)
                logger.info("Memory monitor resumed queue '%s'", name)

        for name in self._ordered_queues():
            if name not in targets or name in self._paused:
                continue
            if self.manager.is_paused(name):
                # paused by someone else; leave it to them
                continue
            await self.manager.pause(name)
            self._paused.add(name)
            purged = await self.manager.purge_completed(name)
            logger.warning("Memory monitor paused queue '%s' (%s, %d completed record(s) purged)",
                           name, level.name, purged)

        if level is ThresholdLevel.EMERGENCY:
            ordered = self._ordered_queues()
            if ordered and ordered[0] not in self._reduced:
                top = ordered[0]
                current = self.manager.get_stats(top).concurrency
                self._reduced[top] = current
                await self.manager.resize(top, max(1, current // 2))
                logger.warning("Memory monitor reduced '%s' concurrency %d -> %d", top, current, max(1, current // 2))
        elif self._reduced:
            for name, original in list(self._reduced.items()):
                del self._reduced[name]
                if name in names:
                    await self.manager.resize(name, original)
                    logger.info("Memory monitor restored '%s' concurrency to %d", name, original)

    async def _run(self, interval: float) -> None:
        while True:
            try:
                await self.evaluate()
            except Exception:
                logger.exception("Memory monitoring tick failed")
            await asyncio.sleep(interval)

    def start(self, interval: Optional[float] = None) -> asyncio.Task:
        if self._task is not None and not self._task.done():
            return self._task
        interval = interval if interval is not None else self.config.interval
        logger.info("Starting memory monitoring (every %.0fs)", interval)
        self._task = asyncio.create_task(self._run(interval), name="memory-monitor")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Memory monitoring stopped")
