from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status

from .claude_analyzer import ClaudeSegmentAnalyzer
from .db import init_db, make_engine
from .detector import HttpObjectDetector
from .executor import JobExecutor
from .hooks import PostCommitHook, WebhookHook
from .logging_setup import configure_logging
from .loops import PeriodicTask
from .models import AnalysisJob, AnalysisResult
from .registry import HttpSourceRegistry
from .retry import RetryManager
from .runner import WorkerPool
from .scheduler import SegmentScheduler
from .settings import Settings, settings
from .store import JobStore, as_utc
from .transport import HlsSegmentTransport

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: JobStore
    loops: List[PeriodicTask] = field(default_factory=list)


def build_executor(cfg: Settings, store: JobStore) -> JobExecutor:
    primary = ClaudeSegmentAnalyzer(
        cfg.anthropic_api_key,
        model=cfg.CLAUDE_MODEL,
        max_tokens=cfg.CLAUDE_MAX_TOKENS,
        frame_fps=cfg.PRIMARY_FRAME_FPS,
        max_frames=cfg.PRIMARY_MAX_FRAMES,
    )
    secondary = None
    if cfg.detector_api_url:
        secondary = HttpObjectDetector(
            cfg.detector_api_url,
            cfg.detector_api_key,
            fps=cfg.DETECTOR_FPS,
            min_confidence=cfg.DETECTOR_MIN_CONFIDENCE,
            class_name=cfg.DETECTOR_CLASS,
        )
    else:
        logger.info("object_detection_disabled", extra={"reason": "DETECTOR_API_URL not set"})

    hooks: List[PostCommitHook] = []
    if cfg.post_commit_webhook_url:
        hooks.append(
            WebhookHook(
                cfg.post_commit_webhook_url,
                cfg.webhook_hmac_secret,
                timeout=cfg.HOOK_TIMEOUT,
            )
        )
    return JobExecutor(store, HlsSegmentTransport(), primary, secondary, hooks=hooks, config=cfg)


def build_services(cfg: Settings) -> Services:
    engine = make_engine(cfg.DATABASE_URL)
    init_db(engine)
    store = JobStore(engine, max_attempts=cfg.MAX_ATTEMPTS)
    services = Services(store=store)
    if not cfg.WORKER_ENABLED:
        logger.info("worker_disabled")
        return services

    registry = None
    if cfg.registry_token_id:
        registry = HttpSourceRegistry(
            cfg.registry_base_url,
            cfg.registry_token_id,
            cfg.registry_token_secret,
            timeout=cfg.REGISTRY_TIMEOUT,
        )
    else:
        logger.warning("registry_not_configured", extra={"effect": "live sources use cached durations"})

    services.loops = [
        WorkerPool(
            store,
            build_executor(cfg, store),
            max_concurrency=cfg.MAX_CONCURRENT_JOBS,
            poll_interval=cfg.POLL_INTERVAL,
        ),
        SegmentScheduler(
            store,
            registry,
            window_size=cfg.WINDOW_SIZE,
            live_window_size=cfg.LIVE_WINDOW_SIZE,
            interval=cfg.SCHEDULER_INTERVAL,
        ),
        RetryManager(
            store,
            backoff_base=cfg.BACKOFF_BASE,
            interval=cfg.RETRY_INTERVAL,
            processing_timeout=cfg.PROCESSING_TIMEOUT,
        ),
    ]
    return services


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.logging_level)
    services = build_services(settings)
    app.state.services = services
    for loop in services.loops:
        loop.start()
    logger.info("app_startup", extra={"loops": [loop.name for loop in services.loops]})
    try:
        yield
    finally:
        for loop in services.loops:
            await loop.stop()
        services.store.engine.dispose()
        logger.info("app_shutdown")


app = FastAPI(lifespan=lifespan)


def get_store(request: Request) -> JobStore:
    services: Optional[Services] = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Job store not ready")
    return services.store


def _iso(value) -> Optional[str]:
    return as_utc(value).isoformat() if value is not None else None


def job_payload(job: AnalysisJob) -> dict[str, Any]:
    return {
        "id": job.id,
        "source_kind": job.source_kind,
        "source_id": job.source_id,
        "playback_ref": job.playback_ref,
        "window_start": job.window_start,
        "window_end": job.window_end,
        "relative_start": job.relative_start,
        "relative_end": job.relative_end,
        "status": job.status,
        "attempts": job.attempts,
        "last_error": job.last_error,
        "result_ref": job.result_ref,
        "created_at": _iso(job.created_at),
        "updated_at": _iso(job.updated_at),
    }


def result_payload(result: AnalysisResult) -> dict[str, Any]:
    return {
        "job_id": result.job_id,
        "summary": result.summary,
        "tags": list(result.tags or []),
        "entities": list(result.entities or []),
        "created_at": _iso(result.created_at),
    }


@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.get("/jobs/stats")
def job_stats(store: JobStore = Depends(get_store)):
    return store.queue_stats().model_dump()


@app.get("/jobs/{job_id}")
def get_job(job_id: int, store: JobStore = Depends(get_store)):
    job = store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job_payload(job)


@app.get("/jobs/{job_id}/result")
def get_job_result(job_id: int, store: JobStore = Depends(get_store)):
    result = store.get_result(job_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Result not found")
    payload = result_payload(result)
    payload["events"] = [
        {
            "name": e.name,
            "description": e.description,
            "severity": e.severity,
            "type": e.type,
            "timestamp_seconds": e.timestamp_seconds,
            "affected_entities": e.affected_entities,
        }
        for e in store.list_events(job_id)
    ]
    payload["detection_frames"] = len(store.list_detections(job_id))
    return payload


@app.post("/jobs/{job_id}/resurrect")
def resurrect_job(job_id: int, store: JobStore = Depends(get_store)):
    job = store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if not store.resurrect(job_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job is {job.status}, only dead jobs can be resurrected",
        )
    logger.info("job_resurrected", extra={"job_id": job_id})
    return job_payload(store.get_job(job_id))
