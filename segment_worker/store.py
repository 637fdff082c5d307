"""Durable job queue and system of record for analysis jobs."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

from sqlalchemy import Engine, case, delete, func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from .db import make_session_factory
from .models import (
    AnalysisEvent,
    AnalysisJob,
    AnalysisResult,
    JobStatus,
    ObjectDetection,
    Source,
    SourceKind,
    utcnow,
)
from .schemas import DetectionFrame, PrimaryAnalysis, QueueStats, Window

logger = logging.getLogger(__name__)

# rows per INSERT statement; keeps well under SQLite's bound-parameter limit
_INSERT_CHUNK = 500
# consecutive lost claim races before giving the tick back to the poller
_CLAIM_RETRIES = 3


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored is UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _insert_for(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:  # pragma: no cover - deployment guard
        raise RuntimeError(f"Unsupported job store dialect: {dialect}")
    return insert


class JobStore:
    """Job queue backed by a relational table.

    Every state change is a conditional ``UPDATE ... WHERE status = :expected``;
    a zero rowcount means another worker got there first. No lock is held
    across calls, so any number of worker processes may share one database.
    """

    def __init__(self, engine: Engine, *, max_attempts: int = 3) -> None:
        self.engine = engine
        self.max_attempts = int(max_attempts)
        self._sessions: sessionmaker[Session] = make_session_factory(engine)

    @contextmanager
    def _begin(self) -> Iterator[Session]:
        with self._sessions() as session, session.begin():
            yield session

    # ------------------------------------------------------------------
    # sources
    # ------------------------------------------------------------------
    def list_schedulable_sources(self) -> List[Source]:
        """Ready sources with a parent stream that still need windows scheduled."""

        stmt = (
            select(Source)
            .where(
                Source.status == "ready",
                Source.stream_id.is_not(None),
                or_(Source.analysis_complete.is_(None), Source.analysis_complete.is_(False)),
            )
            .order_by(Source.created_at)
        )
        with self._begin() as session:
            return list(session.scalars(stmt))

    def mark_source_complete(self, source_id: str) -> bool:
        stmt = update(Source).where(Source.id == source_id).values(analysis_complete=True)
        with self._begin() as session:
            return session.execute(stmt).rowcount > 0

    def upsert_source(self, source: Source) -> None:
        with self._begin() as session:
            session.merge(source)

    # ------------------------------------------------------------------
    # scheduling
    # ------------------------------------------------------------------
    def enqueue_windows(
        self,
        *,
        source_kind: str,
        source_id: str,
        playback_ref: str,
        windows: Sequence[Window],
    ) -> int:
        """Insert one queued job per window, ignoring windows already present.

        Returns the number of rows actually inserted.
        """

        if source_kind not in SourceKind.ALL:
            raise ValueError(f"unknown source kind: {source_kind!r}")
        if not windows:
            return 0

        now = utcnow()
        rows = [
            {
                "source_kind": source_kind,
                "source_id": source_id,
                "playback_ref": playback_ref,
                "window_start": w.window_start,
                "window_end": w.window_end,
                "relative_start": w.relative_start,
                "relative_end": w.relative_end,
                "status": JobStatus.QUEUED,
                "attempts": 0,
                "created_at": now,
                "updated_at": now,
            }
            for w in windows
        ]

        inserted = 0
        with self._begin() as session:
            insert = _insert_for(session)
            for i in range(0, len(rows), _INSERT_CHUNK):
                stmt = (
                    insert(AnalysisJob)
                    .values(rows[i : i + _INSERT_CHUNK])
                    .on_conflict_do_nothing(
                        index_elements=["source_id", "relative_start", "relative_end"]
                    )
                )
                result = session.execute(stmt)
                inserted += max(result.rowcount or 0, 0)
        return inserted

    # ------------------------------------------------------------------
    # claim / transitions
    # ------------------------------------------------------------------
    def transition(
        self,
        job_id: int,
        expected: str,
        new_status: str,
        **values: Any,
    ) -> bool:
        """Move ``job_id`` from ``expected`` to ``new_status`` if nobody else has.

        Returns False when the row was not in ``expected`` at update time.
        """

        stmt = (
            update(AnalysisJob)
            .where(AnalysisJob.id == job_id, AnalysisJob.status == expected)
            .values(status=new_status, updated_at=utcnow(), **values)
        )
        with self._begin() as session:
            return session.execute(stmt).rowcount == 1

    def claim_next(self) -> Optional[AnalysisJob]:
        """Claim the oldest queued job, or return None when there is none to win."""

        oldest = (
            select(AnalysisJob.id)
            .where(AnalysisJob.status == JobStatus.QUEUED)
            .order_by(AnalysisJob.created_at, AnalysisJob.id)
            .limit(1)
        )
        for _ in range(_CLAIM_RETRIES):
            with self._begin() as session:
                job_id = session.scalar(oldest)
            if job_id is None:
                return None
            if self.transition(job_id, JobStatus.QUEUED, JobStatus.PROCESSING):
                return self.get_job(job_id)
            logger.debug("claim_race_lost", extra={"candidate_job_id": job_id})
        return None

    def mark_succeeded(self, job_id: int) -> bool:
        return self.transition(
            job_id, JobStatus.PROCESSING, JobStatus.SUCCEEDED, result_ref=job_id
        )

    def mark_failed(self, job: AnalysisJob, error: str) -> Optional[str]:
        """Record a failed attempt; returns the resulting status or None if not written.

        The attempt counter is bumped in the UPDATE itself, so a copy of
        ``job`` read before the row changed cannot roll it back.
        """

        attempts = AnalysisJob.attempts + 1
        stmt = (
            update(AnalysisJob)
            .where(AnalysisJob.id == job.id, AnalysisJob.status == JobStatus.PROCESSING)
            .values(
                status=case((attempts >= self.max_attempts, JobStatus.DEAD), else_=JobStatus.FAILED),
                attempts=attempts,
                last_error=(error or "unknown error")[:4000],
                updated_at=utcnow(),
            )
        )
        with self._begin() as session:
            result = session.execute(stmt, execution_options={"synchronize_session": False})
            if result.rowcount != 1:
                return None
            return session.scalar(select(AnalysisJob.status).where(AnalysisJob.id == job.id))

    # ------------------------------------------------------------------
    # results
    # ------------------------------------------------------------------
    def save_result(self, job_id: int, analysis: PrimaryAnalysis) -> None:
        values = {
            "job_id": job_id,
            "summary": analysis.summary,
            "tags": list(analysis.tags),
            "entities": [e.model_dump() for e in analysis.entities],
            "raw": analysis.raw,
            "created_at": utcnow(),
        }
        with self._begin() as session:
            insert = _insert_for(session)
            stmt = insert(AnalysisResult).values(values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["job_id"],
                set_={k: stmt.excluded[k] for k in ("summary", "tags", "entities", "raw")},
            )
            session.execute(stmt)

    def save_events(self, job: AnalysisJob, analysis: PrimaryAnalysis) -> int:
        """Replace the job's events; timestamps become seconds from source start."""

        entities = [e.model_dump() for e in analysis.entities]
        records = []
        for event in analysis.events:
            affected = [entities[i] for i in event.affected_entity_ids if 0 <= i < len(entities)]
            records.append(
                AnalysisEvent(
                    job_id=job.id,
                    source_id=job.source_id,
                    name=event.name,
                    description=event.description,
                    severity=event.severity,
                    type=event.type,
                    timestamp_seconds=float(job.relative_start) + float(event.timestamp_seconds),
                    affected_entities=affected,
                )
            )
        with self._begin() as session:
            session.execute(delete(AnalysisEvent).where(AnalysisEvent.job_id == job.id))
            session.add_all(records)
        return len(records)

    def save_detections(self, job_id: int, frames: Sequence[DetectionFrame]) -> int:
        """Upsert per-frame detections, ignoring frames already stored."""

        rows = [
            {
                "job_id": job_id,
                "frame_timestamp": round(float(f.frame_timestamp), 3),
                "frame_index": f.frame_index,
                "detections": [d.model_dump(by_alias=True) for d in f.detections],
                "created_at": utcnow(),
            }
            for f in frames
        ]
        if not rows:
            return 0
        inserted = 0
        with self._begin() as session:
            insert = _insert_for(session)
            for i in range(0, len(rows), _INSERT_CHUNK):
                stmt = (
                    insert(ObjectDetection)
                    .values(rows[i : i + _INSERT_CHUNK])
                    .on_conflict_do_nothing(index_elements=["job_id", "frame_timestamp"])
                )
                inserted += max(session.execute(stmt).rowcount or 0, 0)
        return inserted

    # ------------------------------------------------------------------
    # retry / recovery
    # ------------------------------------------------------------------
    def list_retry_candidates(self) -> List[AnalysisJob]:
        stmt = (
            select(AnalysisJob)
            .where(
                AnalysisJob.status == JobStatus.FAILED,
                AnalysisJob.attempts < self.max_attempts,
            )
            .order_by(AnalysisJob.updated_at)
        )
        with self._begin() as session:
            return list(session.scalars(stmt))

    def requeue(self, job_id: int) -> bool:
        """Failed -> queued; attempts and last_error are kept for diagnostics."""

        return self.transition(job_id, JobStatus.FAILED, JobStatus.QUEUED)

    def list_stale_processing(self, older_than: datetime) -> List[AnalysisJob]:
        stmt = select(AnalysisJob).where(
            AnalysisJob.status == JobStatus.PROCESSING,
            AnalysisJob.updated_at < older_than,
        )
        with self._begin() as session:
            return list(session.scalars(stmt))

    def reclaim_stale(self, timeout_sec: float, *, now: Optional[datetime] = None) -> Dict[str, int]:
        """Charge an attempt to processing rows nobody has touched for ``timeout_sec``."""

        now = now or utcnow()
        cutoff = now - timedelta(seconds=float(timeout_sec))
        outcome: Dict[str, int] = {JobStatus.FAILED: 0, JobStatus.DEAD: 0}
        for job in self.list_stale_processing(cutoff):
            status = self.mark_failed(job, f"processing timed out after {int(timeout_sec)}s")
            if status:
                outcome[status] += 1
        return outcome

    def resurrect(self, job_id: int) -> bool:
        """Manually return a dead job to the queue with a fresh attempt budget."""

        return self.transition(job_id, JobStatus.DEAD, JobStatus.QUEUED, attempts=0)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def get_job(self, job_id: int) -> Optional[AnalysisJob]:
        with self._begin() as session:
            return session.get(AnalysisJob, job_id)

    def get_result(self, job_id: int) -> Optional[AnalysisResult]:
        with self._begin() as session:
            return session.get(AnalysisResult, job_id)

    def list_jobs(self, source_id: Optional[str] = None) -> List[AnalysisJob]:
        stmt = select(AnalysisJob).order_by(AnalysisJob.created_at, AnalysisJob.id)
        if source_id is not None:
            stmt = stmt.where(AnalysisJob.source_id == source_id)
        with self._begin() as session:
            return list(session.scalars(stmt))

    def list_events(self, job_id: int) -> List[AnalysisEvent]:
        stmt = select(AnalysisEvent).where(AnalysisEvent.job_id == job_id).order_by(AnalysisEvent.id)
        with self._begin() as session:
            return list(session.scalars(stmt))

    def list_detections(self, job_id: int) -> List[ObjectDetection]:
        stmt = (
            select(ObjectDetection)
            .where(ObjectDetection.job_id == job_id)
            .order_by(ObjectDetection.frame_timestamp)
        )
        with self._begin() as session:
            return list(session.scalars(stmt))

    def queue_stats(self, *, now: Optional[datetime] = None) -> QueueStats:
        now = now or utcnow()
        stats = QueueStats(
            by_status={s: 0 for s in JobStatus.ALL},
            by_source_kind={k: 0 for k in SourceKind.ALL},
        )
        with self._begin() as session:
            for status, count in session.execute(
                select(AnalysisJob.status, func.count()).group_by(AnalysisJob.status)
            ):
                stats.by_status[status] = int(count)
                stats.total += int(count)
            for kind, count in session.execute(
                select(AnalysisJob.source_kind, func.count()).group_by(AnalysisJob.source_kind)
            ):
                stats.by_source_kind[kind] = int(count)
            oldest = session.scalar(
                select(func.min(AnalysisJob.created_at)).where(AnalysisJob.status == JobStatus.QUEUED)
            )
            newest = session.scalar(
                select(func.max(AnalysisJob.updated_at)).where(
                    AnalysisJob.status == JobStatus.SUCCEEDED
                )
            )
        if oldest is not None:
            stats.oldest_queued_age_sec = max(0, int((now - as_utc(oldest)).total_seconds()))
        if newest is not None:
            stats.last_succeeded_age_sec = max(0, int((now - as_utc(newest)).total_seconds()))
        return stats

    def recent_results(self, limit: int = 5) -> List[AnalysisResult]:
        stmt = select(AnalysisResult).order_by(AnalysisResult.created_at.desc()).limit(limit)
        with self._begin() as session:
            return list(session.scalars(stmt))
