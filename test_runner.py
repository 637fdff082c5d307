import asyncio

from conftest import enqueue
from segment_worker.models import JobStatus
from segment_worker.runner import WorkerPool


class GatedExecutor:
    """Holds every job until the gate opens, tracking concurrency."""

    def __init__(self, store, gate=None):
        self.store = store
        self.gate = gate
        self.running = 0
        self.peak = 0
        self.seen = []

    async def execute(self, job):
        self.running += 1
        self.peak = max(self.peak, self.running)
        self.seen.append(job.id)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0.01)
            await asyncio.to_thread(self.store.mark_succeeded, job.id)
            return JobStatus.SUCCEEDED
        finally:
            self.running -= 1


def test_tick_fills_free_slots_only(store):
    enqueue(store, count=5)

    async def scenario():
        gate = asyncio.Event()
        executor = GatedExecutor(store, gate)
        pool = WorkerPool(store, executor, max_concurrency=2, poll_interval=0.01)

        assert await pool.tick() == 2
        assert await pool.tick() == 0
        await asyncio.sleep(0)
        assert pool.active == 2

        gate.set()
        await pool.drain()
        assert pool.active == 0

        # close the gate again so finished jobs cannot free slots mid-tick
        executor.gate = asyncio.Event()
        assert await pool.tick() == 2
        executor.gate.set()
        await pool.drain()
        return executor

    executor = asyncio.run(scenario())

    statuses = [j.status for j in store.list_jobs()]
    assert statuses.count(JobStatus.SUCCEEDED) == 4
    assert statuses.count(JobStatus.QUEUED) == 1
    assert executor.peak == 2


def test_empty_queue_releases_the_slot(store):
    async def scenario():
        pool = WorkerPool(store, GatedExecutor(store), max_concurrency=1, poll_interval=0.01)
        assert await pool.tick() == 0
        assert not pool.sema.locked()

    asyncio.run(scenario())


def test_loop_drains_queue_within_bound(store):
    enqueue(store, count=7)

    async def scenario():
        executor = GatedExecutor(store)
        pool = WorkerPool(store, executor, max_concurrency=3, poll_interval=0.01)
        pool.start()
        for _ in range(500):
            if len(executor.seen) == 7 and pool.active == 0:
                break
            await asyncio.sleep(0.01)
        await pool.stop()
        assert not pool.is_running()
        return executor

    executor = asyncio.run(scenario())

    assert sorted(executor.seen) == sorted(j.id for j in store.list_jobs())
    assert executor.peak <= 3
    assert all(j.status == JobStatus.SUCCEEDED for j in store.list_jobs())


def test_crashing_executor_frees_its_slot(store):
    enqueue(store, count=2)

    class Exploding:
        async def execute(self, job):
            raise RuntimeError("unexpected")

    async def scenario():
        pool = WorkerPool(store, Exploding(), max_concurrency=1, poll_interval=0.01)
        assert await pool.tick() == 1
        await pool.drain()
        assert await pool.tick() == 1
        await pool.drain()
        assert not pool.sema.locked()

    asyncio.run(scenario())
