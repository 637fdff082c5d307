"""Periodic rehabilitation of failed jobs once their backoff has elapsed."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional

from .loops import PeriodicTask
from .models import AnalysisJob, utcnow
from .store import JobStore, as_utc

logger = logging.getLogger(__name__)


def backoff_seconds(attempts: int, base: float) -> float:
    return float(base) * (2 ** int(attempts))


class RetryManager(PeriodicTask):
    """Requeue failed jobs whose ``base * 2**attempts`` backoff has passed.

    Dead jobs are never touched here. With ``processing_timeout`` set, jobs
    stuck in processing longer than that are charged a failed attempt so a
    crashed worker does not strand them.
    """

    name = "retry"

    def __init__(
        self,
        store: JobStore,
        *,
        backoff_base: float = 10.0,
        interval: float = 5.0,
        processing_timeout: float = 0.0,
    ):
        super().__init__(interval)
        self.store = store
        self.backoff_base = float(backoff_base)
        self.processing_timeout = float(processing_timeout)

    async def tick(self) -> None:
        await asyncio.to_thread(self.run_once)

    def is_due(self, job: AnalysisJob, now: datetime) -> bool:
        elapsed = (now - as_utc(job.updated_at)).total_seconds()
        return elapsed >= backoff_seconds(job.attempts, self.backoff_base)

    def run_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        summary = {"candidates": 0, "requeued": 0, "waiting": 0, "errors": 0, "reclaimed": 0}

        if self.processing_timeout > 0:
            try:
                reclaimed = self.store.reclaim_stale(self.processing_timeout, now=now)
            except Exception:
                summary["errors"] += 1
                logger.exception("stale_reclaim_failed")
            else:
                summary["reclaimed"] = sum(reclaimed.values())
                if summary["reclaimed"]:
                    logger.warning("stale_jobs_reclaimed", extra=reclaimed)

        candidates = self.store.list_retry_candidates()
        summary["candidates"] = len(candidates)
        for job in candidates:
            try:
                if not self.is_due(job, now):
                    summary["waiting"] += 1
                    continue
                if self.store.requeue(job.id):
                    summary["requeued"] += 1
                    logger.info(
                        "job_requeued",
                        extra={"job_id": job.id, "attempts": job.attempts, "last_error": job.last_error},
                    )
            except Exception:
                summary["errors"] += 1
                logger.exception("requeue_failed", extra={"job_id": job.id})

        if summary["requeued"] or summary["errors"]:
            logger.info("retry_sweep_complete", extra=summary)
        return summary
