from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from conftest import add_source, enqueue, set_job
from segment_worker.models import JobStatus, utcnow
from segment_worker.schemas import (
    AnalysisEventItem,
    BoundingBox,
    Detection,
    DetectionFrame,
    Entity,
    PrimaryAnalysis,
)
from segment_worker.windows import complete_windows


def test_enqueue_is_idempotent(store):
    windows = complete_windows(125, 60)

    first = store.enqueue_windows(
        source_kind="finished", source_id="asset-1", playback_ref="pb", windows=windows
    )
    second = store.enqueue_windows(
        source_kind="finished", source_id="asset-1", playback_ref="pb", windows=windows
    )

    assert first == 2
    assert second == 0
    jobs = store.list_jobs("asset-1")
    assert len(jobs) == 2
    assert all(j.status == JobStatus.QUEUED and j.attempts == 0 for j in jobs)


def test_enqueue_appends_only_new_windows(store):
    store.enqueue_windows(
        source_kind="live", source_id="live-1", playback_ref="pb",
        windows=complete_windows(45, 20, is_live=True, epoch=1000),
    )
    inserted = store.enqueue_windows(
        source_kind="live", source_id="live-1", playback_ref="pb",
        windows=complete_windows(65, 20, is_live=True, epoch=1000),
    )

    assert inserted == 1
    jobs = store.list_jobs("live-1")
    assert [(j.relative_start, j.window_start) for j in jobs] == [(0, 1000), (20, 1020), (40, 1040)]


def test_same_offsets_on_different_sources_do_not_collide(store):
    enqueue(store, "asset-1")
    enqueue(store, "asset-2")
    assert len(store.list_jobs()) == 2


def test_claim_is_fifo(store):
    jobs = enqueue(store, "asset-1", count=3)
    set_job(store, jobs[0].id, created_at=utcnow() + timedelta(hours=1))

    claimed = [store.claim_next() for _ in range(3)]

    assert [j.id for j in claimed] == [jobs[1].id, jobs[2].id, jobs[0].id]
    assert all(j.status == JobStatus.PROCESSING for j in claimed)
    assert store.claim_next() is None


def test_conditional_transition_has_one_winner(store):
    (job,) = enqueue(store)

    assert store.transition(job.id, JobStatus.QUEUED, JobStatus.PROCESSING) is True
    assert store.transition(job.id, JobStatus.QUEUED, JobStatus.PROCESSING) is False


def test_concurrent_claims_never_share_a_job(store):
    enqueue(store, "asset-1", count=6)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: store.claim_next(), range(12)))

    claimed = [j.id for j in results if j is not None]
    assert len(claimed) == len(set(claimed))
    # losers retry, so every job is eventually handed out exactly once
    while True:
        job = store.claim_next()
        if job is None:
            break
        claimed.append(job.id)
    assert sorted(claimed) == sorted(j.id for j in store.list_jobs())


def test_failure_accounting_ends_in_dead(store):
    (job,) = enqueue(store)

    outcomes = []
    for _ in range(3):
        claimed = store.claim_next()
        outcomes.append(store.mark_failed(claimed, "boom"))
        store.requeue(claimed.id)

    assert outcomes == [JobStatus.FAILED, JobStatus.FAILED, JobStatus.DEAD]
    job = store.get_job(job.id)
    assert job.status == JobStatus.DEAD
    assert job.attempts == 3
    assert job.last_error == "boom"
    assert store.list_retry_candidates() == []


def test_mark_failed_requires_processing(store):
    (job,) = enqueue(store)
    assert store.mark_failed(job, "not claimed") is None
    assert store.get_job(job.id).attempts == 0


def test_mark_failed_counts_from_the_stored_row(store):
    (job,) = enqueue(store)
    claimed = store.claim_next()
    assert claimed.attempts == 0
    # the row moves on after the claim snapshot was taken
    set_job(store, job.id, attempts=2)

    assert store.mark_failed(claimed, "late") == JobStatus.DEAD
    job = store.get_job(job.id)
    assert job.status == JobStatus.DEAD
    assert job.attempts == 3


def test_requeue_keeps_diagnostics(store):
    enqueue(store)
    job = store.claim_next()
    store.mark_failed(job, "transport timed out")

    assert store.requeue(job.id)
    job = store.get_job(job.id)
    assert job.status == JobStatus.QUEUED
    assert job.attempts == 1
    assert job.last_error == "transport timed out"


def test_resurrect_only_moves_dead_jobs(store):
    (job,) = enqueue(store)
    assert store.resurrect(job.id) is False

    set_job(store, job.id, status=JobStatus.DEAD, attempts=3)
    assert store.resurrect(job.id) is True
    job = store.get_job(job.id)
    assert job.status == JobStatus.QUEUED
    assert job.attempts == 0


def test_reclaim_stale_charges_an_attempt(store):
    enqueue(store, count=2)
    stuck = store.claim_next()
    fresh = store.claim_next()
    now = utcnow()
    set_job(store, stuck.id, updated_at=now - timedelta(seconds=600), attempts=2)

    outcome = store.reclaim_stale(300, now=now)

    assert outcome == {JobStatus.FAILED: 0, JobStatus.DEAD: 1}
    assert store.get_job(stuck.id).status == JobStatus.DEAD
    assert "timed out" in store.get_job(stuck.id).last_error
    assert store.get_job(fresh.id).status == JobStatus.PROCESSING


def test_success_writes_result_and_back_reference(store):
    enqueue(store)
    job = store.claim_next()
    analysis = PrimaryAnalysis(summary="A person walks by.", tags=["person"], raw={"summary": "x"})

    store.save_result(job.id, analysis)
    assert store.mark_succeeded(job.id)

    job = store.get_job(job.id)
    assert job.status == JobStatus.SUCCEEDED
    assert job.result_ref == job.id
    result = store.get_result(job.id)
    assert result.summary == "A person walks by."
    assert result.tags == ["person"]


def test_events_are_replaced_and_absolute(store):
    enqueue(store, count=2)
    store.claim_next()
    job = store.claim_next()
    analysis = PrimaryAnalysis(
        summary="s",
        entities=[Entity(type="person", name="man in red jacket", confidence=0.9)],
        events=[
            AnalysisEventItem(
                name="Package theft",
                description="A man takes a parcel from the porch.",
                severity="High",
                type="Crime",
                timestamp_seconds=12.5,
                affected_entity_ids=[0, 7],
            )
        ],
    )

    store.save_events(job, analysis)
    store.save_events(job, analysis)

    events = store.list_events(job.id)
    assert len(events) == 1
    assert events[0].timestamp_seconds == 72.5
    assert events[0].affected_entities == [
        {"type": "person", "name": "man in red jacket", "confidence": 0.9}
    ]


def test_detections_are_deduplicated_by_frame(store):
    enqueue(store)
    job = store.claim_next()
    box = BoundingBox(x=0.1, y=0.2, width=0.3, height=0.4)
    frames = [
        DetectionFrame(frame_timestamp=0.0, frame_index=0, detections=[]),
        DetectionFrame(
            frame_timestamp=0.125,
            frame_index=1,
            detections=[Detection(class_name="person", confidence=0.8, bbox=box)],
        ),
    ]

    assert store.save_detections(job.id, frames) == 2
    assert store.save_detections(job.id, frames) == 0

    rows = store.list_detections(job.id)
    assert [r.frame_timestamp for r in rows] == [0.0, 0.125]
    assert rows[1].detections[0]["class"] == "person"


def test_schedulable_sources_filter(store):
    add_source(store, "ready-1")
    add_source(store, "done-1", analysis_complete=True)
    add_source(store, "preparing-1", status="preparing")
    add_source(store, "orphan-1", stream_id=None)

    assert [s.id for s in store.list_schedulable_sources()] == ["ready-1"]
    assert store.mark_source_complete("ready-1")
    assert store.list_schedulable_sources() == []


def test_queue_stats(store):
    enqueue(store, "asset-1", count=3)
    enqueue(store, "live-1", count=1, kind="live")
    job = store.claim_next()
    store.save_result(job.id, PrimaryAnalysis(summary="done"))
    store.mark_succeeded(job.id)

    stats = store.queue_stats(now=utcnow() + timedelta(seconds=30))

    assert stats.total == 4
    assert stats.by_status[JobStatus.QUEUED] == 3
    assert stats.by_status[JobStatus.SUCCEEDED] == 1
    assert stats.by_status[JobStatus.DEAD] == 0
    assert stats.by_source_kind == {"live": 1, "finished": 3}
    assert stats.oldest_queued_age_sec >= 30
    assert stats.last_succeeded_age_sec >= 30
    assert [r.job_id for r in store.recent_results()] == [job.id]
