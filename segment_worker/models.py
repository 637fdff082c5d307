from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only auto-increments INTEGER PRIMARY KEY columns
_BigId = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus:
    """Wire values of ``analysis_jobs.status``."""

    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEAD = "dead"

    ALL = (QUEUED, PROCESSING, SUCCEEDED, FAILED, DEAD)
    TERMINAL = (SUCCEEDED, DEAD)


class SourceKind:
    LIVE = "live"
    FINISHED = "finished"

    ALL = (LIVE, FINISHED)


class Base(DeclarativeBase):
    pass


class Source(Base):
    """Local view of a video source kept in sync by the ingest side."""

    __tablename__ = "sources"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="preparing")  # preparing|ready|errored
    is_live: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)  # stale while live
    playback_ref: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    stream_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    analysis_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AnalysisJob(Base):
    __tablename__ = "analysis_jobs"

    id: Mapped[int] = mapped_column(_BigId, primary_key=True, autoincrement=True)

    source_kind: Mapped[str] = mapped_column(String(16), nullable=False)  # live|finished
    source_id: Mapped[str] = mapped_column(String(64), nullable=False)
    playback_ref: Mapped[str] = mapped_column(String(128), nullable=False)

    # absolute epoch seconds for live, source-relative seconds for finished
    window_start: Mapped[int] = mapped_column(BigInteger, nullable=False)
    window_end: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # always source-relative; deduplication key
    relative_start: Mapped[int] = mapped_column(Integer, nullable=False)
    relative_end: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=JobStatus.QUEUED)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result_ref: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("source_id", "relative_start", "relative_end", name="uq_analysis_jobs_window"),
        Index("ix_analysis_jobs_status_created", "status", "created_at"),
        Index("ix_analysis_jobs_source", "source_kind", "source_id"),
    )

    @property
    def is_live(self) -> bool:
        return self.source_kind == SourceKind.LIVE

    def __repr__(self) -> str:
        return (
            f"<AnalysisJob id={self.id} {self.source_kind}:{self.source_id} "
            f"[{self.relative_start},{self.relative_end}) {self.status} attempts={self.attempts}>"
        )


class AnalysisResult(Base):
    __tablename__ = "analysis_results"

    job_id: Mapped[int] = mapped_column(
        _BigId, ForeignKey("analysis_jobs.id", ondelete="CASCADE"), primary_key=True
    )
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    entities: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    raw: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AnalysisEvent(Base):
    __tablename__ = "analysis_events"

    id: Mapped[int] = mapped_column(_BigId, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        _BigId, ForeignKey("analysis_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    source_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    timestamp_seconds: Mapped[float] = mapped_column(Float, nullable=False)  # from source start
    affected_entities: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_analysis_events_source_time", "source_id", "timestamp_seconds"),)


class ObjectDetection(Base):
    """Detections found in one sampled frame of a job's segment."""

    __tablename__ = "object_detections"

    id: Mapped[int] = mapped_column(_BigId, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        _BigId, ForeignKey("analysis_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    frame_timestamp: Mapped[float] = mapped_column(Float, nullable=False)
    frame_index: Mapped[int] = mapped_column(Integer, nullable=False)
    detections: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("job_id", "frame_timestamp", name="uq_object_detections_frame"),
    )
