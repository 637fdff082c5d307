import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import update

# Add repository root to path
sys.path.insert(0, str(Path(__file__).parent))

from segment_worker.db import init_db, make_engine
from segment_worker.models import AnalysisJob, Source
from segment_worker.schemas import Window
from segment_worker.store import JobStore

T0 = datetime(2025, 10, 21, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'jobs.db'}")
    init_db(engine)
    yield JobStore(engine, max_attempts=3)
    engine.dispose()


def add_source(store, source_id, **fields):
    values = {
        "id": source_id,
        "status": "ready",
        "is_live": False,
        "duration_seconds": 125.0,
        "playback_ref": f"pb-{source_id}",
        "stream_id": "stream-1",
        "analysis_complete": False,
        "created_at": T0,
    }
    values.update(fields)
    store.upsert_source(Source(**values))
    return values


def enqueue(store, source_id="asset-1", count=1, size=60, kind="finished"):
    windows = [
        Window(
            relative_start=i * size,
            relative_end=(i + 1) * size,
            window_start=i * size,
            window_end=(i + 1) * size,
        )
        for i in range(count)
    ]
    store.enqueue_windows(
        source_kind=kind, source_id=source_id, playback_ref=f"pb-{source_id}", windows=windows
    )
    return store.list_jobs(source_id)


def set_job(store, job_id, **values):
    """Write columns directly, bypassing the state machine."""

    with store._begin() as session:
        session.execute(update(AnalysisJob).where(AnalysisJob.id == job_id).values(**values))


def ago(seconds, now=T0):
    return now - timedelta(seconds=seconds)
