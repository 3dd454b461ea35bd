import asyncio
import pytest
from auditcrawler.batch import RollingBatchScheduler, run_batch
from auditcrawler.models import AnalysisTask, BatchStatus


def make_tasks(n):
    return [AnalysisTask(page_id=i) for i in range(n)]


async def settle():
    for _ in range(20):
        await asyncio.sleep(0)


class TestRollingBatch:
    @pytest.mark.asyncio
    async def test_in_flight_stays_at_min_remaining_limit(self):
        events = {i: asyncio.Event() for i in range(11)}
        started = []
        peak = 0

        async def runner(task):
            nonlocal peak
            started.append(task.page_id)
            peak = max(peak, scheduler.in_flight)
            await events[task.page_id].wait()
            return task.page_id * 10

        scheduler = RollingBatchScheduler(runner, concurrency_limit=5)
        run = asyncio.create_task(scheduler.run(make_tasks(11)))
        await settle()
        assert started == [0, 1, 2, 3, 4]
        assert scheduler.in_flight == 5

        # release out of launch order: completion order is free
        release_order = [3, 0, 4, 1, 2, 7, 5, 6, 10, 9, 8]
        for completed, task_id in enumerate(release_order, start=1):
            assert task_id in started
            events[task_id].set()
            await settle()
            remaining = 11 - completed
            assert scheduler.in_flight == min(remaining, 5)

        result = await run
        assert peak <= 5
        assert started == list(range(11))
        assert result.succeeded == 11
        assert result.failed == 0
        assert result.results["7"] == 70
        assert result.status is BatchStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_slow_progress_callback_does_not_hold_slots(self):
        events = {i: asyncio.Event() for i in range(11)}
        gate = asyncio.Event()
        reported = []

        async def runner(task):
            await events[task.page_id].wait()

        async def on_progress(progress):
            reported.append(progress.completed_count)
            await gate.wait()

        scheduler = RollingBatchScheduler(runner, concurrency_limit=5, on_progress=on_progress)
        run = asyncio.create_task(scheduler.run(make_tasks(11)))
        await settle()

        for completed, task_id in enumerate(range(11), start=1):
            events[task_id].set()
            await settle()
            remaining = 11 - completed
            assert scheduler.in_flight == min(remaining, 5)
            assert scheduler.pending == max(remaining - 5, 0)

        # the callback is still stuck on the first report
        assert reported == [1]
        assert not run.done()
        gate.set()
        result = await asyncio.wait_for(run, timeout=5)

        assert reported == list(range(1, 12))
        assert result.succeeded == 11

    @pytest.mark.asyncio
    async def test_all_failing_tasks_terminate_as_failed(self):
        async def runner(task):
            await asyncio.sleep(0)
            raise RuntimeError(f"boom {task.page_id}")

        result = await asyncio.wait_for(run_batch(make_tasks(7), runner, concurrency_limit=3), timeout=5)

        assert result.succeeded == 0
        assert result.failed == 7
        assert len(result.failures) == 7
        assert result.status is BatchStatus.FAILED

    @pytest.mark.asyncio
    async def test_partial_failure_is_completed(self):
        failing = {2, 5, 8}

        async def runner(task):
            await asyncio.sleep(0.001 * (task.page_id % 3))
            if task.page_id in failing:
                raise ValueError("unparseable page")
            return "ok"

        result = await run_batch(make_tasks(10), runner, concurrency_limit=5)

        assert result.status is BatchStatus.COMPLETED
        assert result.succeeded == 7
        assert result.failed == 3
        assert sorted(f.task_id for f in result.failures) == ["2", "5", "8"]
        assert all(f.reason == "unparseable page" for f in result.failures)

    @pytest.mark.asyncio
    async def test_cancellation_stops_new_launches(self):
        started = []

        async def runner(task):
            started.append(task.page_id)
            await asyncio.sleep(0)
            return True

        result = await run_batch(make_tasks(6), runner, concurrency_limit=2,
                                 should_cancel=lambda: len(started) >= 3)

        assert started == [0, 1, 2]
        assert result.cancelled is True
        assert result.succeeded == 3
        assert result.not_run == ["3", "4", "5"]
        assert result.status is BatchStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_async_cancel_check_before_first_launch(self):
        async def runner(task):
            return True

        async def stopped():
            return True

        result = await run_batch(make_tasks(4), runner, should_cancel=stopped)

        assert result.cancelled is True
        assert result.not_run == ["0", "1", "2", "3"]
        assert result.succeeded == 0

    @pytest.mark.asyncio
    async def test_failing_cancel_check_does_not_abort(self):
        async def runner(task):
            return True

        def broken():
            raise ConnectionError("status store unreachable")

        result = await run_batch(make_tasks(3), runner, should_cancel=broken)

        assert result.succeeded == 3
        assert not result.cancelled

    @pytest.mark.asyncio
    async def test_progress_after_every_settlement(self):
        progress = []

        async def runner(task):
            await asyncio.sleep(0)
            if task.page_id == 1:
                raise RuntimeError("bad")

        async def on_progress(p):
            progress.append(p)

        await run_batch(make_tasks(4), runner, concurrency_limit=2, on_progress=on_progress)

        assert [p.completed_count for p in progress] == [1, 2, 3, 4]
        assert all(p.total_count == 4 for p in progress)
        assert progress[-1].failed == 1
        assert progress[-1].succeeded == 3

    @pytest.mark.asyncio
    async def test_launch_order_is_fifo(self):
        started = []

        async def runner(task):
            started.append(task.page_id)

        await run_batch(make_tasks(5), runner, concurrency_limit=1)
        assert started == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        async def runner(task):
            raise AssertionError("never called")

        result = await run_batch([], runner)
        assert result.total == 0
        assert result.status is BatchStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_scheduler_is_single_use(self):
        async def runner(task):
            return None

        scheduler = RollingBatchScheduler(runner)
        await scheduler.run(make_tasks(1))
        with pytest.raises(RuntimeError):
            await scheduler.run(make_tasks(1))

    def test_limit_must_be_positive(self):
        with pytest.raises(ValueError):
            RollingBatchScheduler(lambda task: None, concurrency_limit=0)
