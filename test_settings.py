import pytest
from pydantic import ValidationError

from segment_worker.settings import Settings


def test_defaults_leave_stale_sweep_disabled():
    cfg = Settings()
    assert cfg.PROCESSING_TIMEOUT == 0
    assert cfg.max_execution_seconds == 120 + 180 + 10


def test_stale_sweep_shorter_than_a_job_is_rejected():
    with pytest.raises(ValidationError, match="PROCESSING_TIMEOUT"):
        Settings(PROCESSING_TIMEOUT=1, PRIMARY_TIMEOUT=180)

    # exactly the longest execution is still too short
    with pytest.raises(ValidationError):
        Settings(
            PROCESSING_TIMEOUT=70,
            SEGMENT_FETCH_TIMEOUT=30,
            PRIMARY_TIMEOUT=20,
            SECONDARY_TIMEOUT=35,
            HOOK_TIMEOUT=5,
        )


def test_stale_sweep_longer_than_a_job_is_accepted():
    cfg = Settings(
        PROCESSING_TIMEOUT=71,
        SEGMENT_FETCH_TIMEOUT=30,
        PRIMARY_TIMEOUT=20,
        SECONDARY_TIMEOUT=35,
        HOOK_TIMEOUT=5,
    )
    assert cfg.PROCESSING_TIMEOUT == 71


def test_other_bounds():
    with pytest.raises(ValidationError):
        Settings(WINDOW_SIZE=0)
    with pytest.raises(ValidationError):
        Settings(PROCESSING_TIMEOUT=-1)
    assert Settings(MAX_CONCURRENCY=5).MAX_CONCURRENT_JOBS == 5
