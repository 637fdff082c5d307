import json
import logging

from segment_worker.logging_setup import (
    JobContextFilter,
    JsonFormatter,
    bind_job_context,
    reset_job_context,
)


def render(msg="job_started", **extra):
    record = logging.getLogger("segment_worker.test").makeRecord(
        "segment_worker.test", logging.INFO, __file__, 1, msg, (), None, extra=extra or None
    )
    JobContextFilter().filter(record)
    return json.loads(JsonFormatter().format(record))


def test_bound_job_id_is_stamped_on_records():
    token = bind_job_context(42)
    try:
        line = render(window_start=60)
    finally:
        reset_job_context(token)

    assert line["event"] == "job_started"
    assert line["level"] == "info"
    assert line["logger"] == "segment_worker.test"
    assert line["job_id"] == 42
    assert line["window_start"] == 60


def test_explicit_job_id_wins_over_context():
    token = bind_job_context(1)
    try:
        assert render(job_id=7)["job_id"] == 7
    finally:
        reset_job_context(token)


def test_record_attributes_are_not_leaked():
    line = render()
    assert "job_id" not in line
    for key in ("args", "lineno", "pathname", "process", "msg"):
        assert key not in line
