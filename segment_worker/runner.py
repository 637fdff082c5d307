"""Bounded pool of job execution slots fed by the job store."""

from __future__ import annotations

import asyncio
import logging
from typing import Set

from .executor import JobExecutor
from .loops import PeriodicTask
from .models import AnalysisJob
from .store import JobStore

logger = logging.getLogger(__name__)


class WorkerPool(PeriodicTask):
    """Claims queued jobs while a slot is free and runs each in its own task.

    A slot is held until the job's execution finishes, so slow analyses
    throttle new claims instead of piling claimed jobs up in memory.
    """

    name = "worker"

    def __init__(
        self,
        store: JobStore,
        executor: JobExecutor,
        *,
        max_concurrency: int = 3,
        poll_interval: float = 5.0,
    ):
        super().__init__(poll_interval)
        self.store = store
        self.executor = executor
        self.max_concurrency = max(1, int(max_concurrency))
        self.sema = asyncio.Semaphore(self.max_concurrency)
        self._inflight: Set[asyncio.Task] = set()

    @property
    def active(self) -> int:
        return len(self._inflight)

    async def tick(self) -> int:
        """Claim until the pool is full or the queue is empty; returns jobs started."""

        started = 0
        while not self._stop.is_set() and not self.sema.locked():
            await self.sema.acquire()
            try:
                job = await asyncio.to_thread(self.store.claim_next)
            except BaseException:
                self.sema.release()
                raise
            if job is None:
                self.sema.release()
                break
            self._spawn(job)
            started += 1
        if started:
            logger.info("jobs_claimed", extra={"claimed": started, "active": self.active})
        return started

    def _spawn(self, job: AnalysisJob) -> None:
        task = asyncio.create_task(self._run(job), name=f"job-{job.id}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run(self, job: AnalysisJob) -> None:
        try:
            await self.executor.execute(job)
        except Exception:
            logger.exception("job_execution_crashed", extra={"job_id": job.id})
        finally:
            self.sema.release()

    async def drain(self) -> None:
        """Wait for in-flight jobs to settle."""

        if not self._inflight:
            return
        logger.info("worker_draining", extra={"active": self.active})
        await asyncio.gather(*list(self._inflight), return_exceptions=True)
