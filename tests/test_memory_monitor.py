import asyncio
import pytest
from auditcrawler.config import MonitorConfig, QueueConfig
from auditcrawler.memory_monitor import MemoryMonitor, build_snapshot, classify_level, estimate_queue_memory
from auditcrawler.models import QueueStats, ThresholdLevel

PRIORITY = ["a", "b", "c", "d"]


def monitor_config():
    # base load: a=100 (2 workers), b, c, d = 50 each -> 250 MB
    return MonitorConfig(interval=0.01, warning_mb=200, critical_mb=260, emergency_mb=400, priority=list(PRIORITY))


async def make_queues(manager):
    for name in PRIORITY:
        concurrency = 2 if name == "a" else 1
        await manager.create_queue(name, config=QueueConfig(queue_name=name, max_workers=0, max_queue_size=1000,
                                                             concurrency=concurrency, delay_between_jobs=0.0,
                                                             retry_delay=0.0))


async def fill(manager, queue_name, n):
    for i in range(n):
        await manager.add_job(queue_name, i)


class CallLog:
    def __init__(self, manager):
        self.calls = []
        for name in ("pause", "resume", "purge_completed", "resize"):
            original = getattr(manager, name)
            setattr(manager, name, self._wrap(name, original))

    def _wrap(self, action, original):
        async def wrapper(queue_name, *args):
            self.calls.append((action, queue_name) + args)
            return await original(queue_name, *args)
        return wrapper

    def of(self, action):
        return [c[1:] for c in self.calls if c[0] == action]


class TestEstimate:
    def test_formula(self):
        stats = QueueStats(queue_name="q", waiting=10, active=2, completed=150, failed=4, delayed=1, workers=3)
        assert estimate_queue_memory(stats) == 3 * 50 + 2 * 15 + 10 * 5 + 100 * 2

    def test_levels(self):
        cfg = MonitorConfig(warning_mb=6144, critical_mb=7168, emergency_mb=7680)
        assert classify_level(6144, cfg) is ThresholdLevel.OK
        assert classify_level(6145, cfg) is ThresholdLevel.WARNING
        assert classify_level(7169, cfg) is ThresholdLevel.CRITICAL
        assert classify_level(8000, cfg) is ThresholdLevel.EMERGENCY

    def test_snapshot_totals(self):
        stats = [QueueStats("a", 0, 0, 0, 0, 0, workers=2), QueueStats("b", 4, 0, 0, 0, 0, workers=1)]
        snap = build_snapshot(stats, monitor_config())
        assert snap.per_queue_estimate_mb == {"a": 100, "b": 70}
        assert snap.total_estimate_mb == 170
        assert snap.threshold_level is ThresholdLevel.OK


class TestMemoryMonitor:
    @pytest.mark.asyncio
    async def test_one_pause_per_queue_per_crossing(self, manager):
        await make_queues(manager)
        log = CallLog(manager)
        monitor = MemoryMonitor(manager, monitor_config())

        assert (await monitor.evaluate()).threshold_level is ThresholdLevel.WARNING
        assert log.calls == []

        await fill(manager, "a", 3)  # 265 MB
        for _ in range(5):
            snap = await monitor.evaluate()
            assert snap.threshold_level is ThresholdLevel.CRITICAL

        assert log.of("pause") == [("c",), ("d",)]
        assert log.of("purge_completed") == [("c",), ("d",)]
        assert monitor.paused_queues == {"c", "d"}

    @pytest.mark.asyncio
    async def test_emergency_pauses_all_but_top_and_halves_it(self, manager):
        await make_queues(manager)
        log = CallLog(manager)
        monitor = MemoryMonitor(manager, monitor_config())

        await fill(manager, "a", 3)
        await monitor.evaluate()
        await fill(manager, "a", 30)  # 415 MB
        for _ in range(3):
            snap = await monitor.evaluate()
            assert snap.threshold_level is ThresholdLevel.EMERGENCY

        assert log.of("pause") == [("c",), ("d",), ("b",)]
        assert log.of("resize") == [("a", 1)]
        assert not manager.is_paused("a")
        assert manager.get_stats("a").concurrency == 1

    @pytest.mark.asyncio
    async def test_recovery_resumes_only_what_the_monitor_paused(self, manager):
        await make_queues(manager)
        await manager.pause("d")  # operator decision
        log = CallLog(manager)
        monitor = MemoryMonitor(manager, monitor_config())

        await fill(manager, "a", 33)
        snap = await monitor.evaluate()
        assert snap.threshold_level is ThresholdLevel.EMERGENCY
        assert log.of("pause") == [("b",), ("c",)]

        await manager.purge("a")
        snap = await monitor.evaluate()
        assert snap.threshold_level is ThresholdLevel.WARNING

        assert log.of("resume") == [("b",), ("c",)]
        assert manager.is_paused("d")
        assert not manager.is_paused("b")
        assert manager.get_stats("a").concurrency == 2
        assert monitor.paused_queues == set()

    @pytest.mark.asyncio
    async def test_emergency_to_critical_keeps_lower_half_paused(self, manager):
        await make_queues(manager)
        log = CallLog(manager)
        monitor = MemoryMonitor(manager, monitor_config())

        await fill(manager, "a", 33)
        await monitor.evaluate()
        queue = manager._queues["a"]
        while len(queue.waiting) > 3:
            queue.waiting.pop()

        snap = await monitor.evaluate()
        assert snap.threshold_level is ThresholdLevel.CRITICAL
        assert log.of("resume") == [("b",)]
        assert monitor.paused_queues == {"c", "d"}
        assert manager.get_stats("a").concurrency == 2

    @pytest.mark.asyncio
    async def test_stats_and_breakdown(self, manager):
        await make_queues(manager)
        await fill(manager, "b", 10)
        monitor = MemoryMonitor(manager, monitor_config())

        stats = monitor.memory_stats()
        assert stats["used_memory_mb"] == 300
        assert stats["level"] == "critical"
        assert stats["recommendations"]
        breakdown = monitor.queue_memory_breakdown()
        assert [row["queue_name"] for row in breakdown][:2] in (["a", "b"], ["b", "a"])
        assert breakdown[0]["estimated_memory_mb"] == 100

    @pytest.mark.asyncio
    async def test_periodic_loop(self, manager):
        await make_queues(manager)
        await fill(manager, "a", 3)
        monitor = MemoryMonitor(manager, monitor_config())

        monitor.start()
        await asyncio.sleep(0.05)
        await monitor.stop()

        assert monitor.last_snapshot is not None
        assert monitor.level is ThresholdLevel.CRITICAL
        assert manager.is_paused("c") and manager.is_paused("d")
