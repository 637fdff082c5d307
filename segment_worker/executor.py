"""Execution of one claimed analysis job."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, List, Optional, Sequence, Tuple, TypeVar

from .analysis import AnalysisError, PrimaryAnalyzer, SecondaryAnalyzer
from .hooks import PostCommitHook
from .logging_setup import bind_job_context, reset_job_context
from .models import AnalysisJob, JobStatus, SourceKind
from .schemas import DetectionFrame, PrimaryAnalysis
from .segment import SegmentFetchError
from .settings import Settings, settings as default_settings
from .store import JobStore
from .transport import SegmentTransport, resolve_segment_address

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _bounded(awaitable: Awaitable[T], timeout: float, label: str) -> T:
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise TimeoutError(f"{label} timed out after {timeout:g}s") from exc


def _describe(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or type(exc).__name__


class JobExecutor:
    """Fetch, analyze and resolve a single job.

    The executor keeps no state between jobs; everything it learns is
    written to the job store. It never raises out of :meth:`execute`.
    """

    def __init__(
        self,
        store: JobStore,
        transport: SegmentTransport,
        primary: PrimaryAnalyzer,
        secondary: Optional[SecondaryAnalyzer] = None,
        *,
        hooks: Sequence[PostCommitHook] = (),
        config: Optional[Settings] = None,
    ):
        self.store = store
        self.transport = transport
        self.primary = primary
        self.secondary = secondary
        self.hooks = list(hooks)
        self.config = config or default_settings

    async def execute(self, job: AnalysisJob) -> Optional[str]:
        """Run ``job`` to a resting state and return it (None if it could not be written)."""

        token = bind_job_context(job.id)
        try:
            logger.info(
                "job_started",
                extra={
                    "source_kind": job.source_kind,
                    "source_id": job.source_id,
                    "window": [job.window_start, job.window_end],
                    "attempt": job.attempts + 1,
                },
            )
            try:
                analysis, frames = await self._analyze(job)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("job_attempt_failed", extra={"error": _describe(exc)})
                return await self._fail(job, _describe(exc))
            return await self._succeed(job, analysis, frames)
        finally:
            reset_job_context(token)

    async def _analyze(self, job: AnalysisJob) -> Tuple[PrimaryAnalysis, Optional[List[DetectionFrame]]]:
        cfg = self.config
        address = resolve_segment_address(
            job,
            base_url=cfg.playback_base_url,
            live_params=cfg.LIVE_RANGE_PARAMS,
            finished_params=cfg.FINISHED_RANGE_PARAMS,
        )
        try:
            media = await _bounded(self.transport.fetch(address), cfg.SEGMENT_FETCH_TIMEOUT, "segment fetch")
        except (SegmentFetchError, TimeoutError):
            raise
        except Exception as exc:
            raise SegmentFetchError(f"segment fetch failed: {_describe(exc)}") from exc
        logger.info("segment_ready", extra={"bytes": len(media)})

        calls = [_bounded(self.primary.analyze(media), cfg.PRIMARY_TIMEOUT, "primary analysis")]
        if job.source_kind == SourceKind.FINISHED and self.secondary is not None:
            calls.append(
                _bounded(
                    self.secondary.analyze(media, float(job.relative_start)),
                    cfg.SECONDARY_TIMEOUT,
                    "object detection",
                )
            )
        # neither call may cancel the other
        outcomes = await asyncio.gather(*calls, return_exceptions=True)

        frames: Optional[List[DetectionFrame]] = None
        if len(outcomes) > 1:
            secondary_out = outcomes[1]
            if isinstance(secondary_out, asyncio.CancelledError):
                raise secondary_out
            if isinstance(secondary_out, BaseException):
                logger.warning("secondary_analysis_failed", extra={"error": _describe(secondary_out)})
            else:
                frames = secondary_out

        primary_out = outcomes[0]
        if isinstance(primary_out, asyncio.CancelledError):
            raise primary_out
        if isinstance(primary_out, BaseException):
            raise AnalysisError(f"primary analysis failed: {_describe(primary_out)}") from primary_out
        return primary_out, frames

    async def _succeed(
        self,
        job: AnalysisJob,
        analysis: PrimaryAnalysis,
        frames: Optional[List[DetectionFrame]],
    ) -> Optional[str]:
        try:
            await asyncio.to_thread(self.store.save_result, job.id, analysis)
        except Exception as exc:
            logger.exception("result_write_failed")
            return await self._fail(job, f"result write failed: {_describe(exc)}")

        if analysis.events:
            try:
                count = await asyncio.to_thread(self.store.save_events, job, analysis)
                logger.info("events_stored", extra={"events": count})
            except Exception:
                logger.exception("events_write_failed")

        if frames:
            try:
                count = await asyncio.to_thread(self.store.save_detections, job.id, frames)
                logger.info("detections_stored", extra={"frames": len(frames), "inserted": count})
            except Exception:
                logger.exception("detections_write_failed")

        try:
            ok = await asyncio.to_thread(self.store.mark_succeeded, job.id)
        except Exception:
            logger.exception("status_write_failed", extra={"target": JobStatus.SUCCEEDED})
            return None
        if not ok:
            logger.error("status_transition_lost", extra={"target": JobStatus.SUCCEEDED})
            return None

        logger.info("job_succeeded")
        await self._run_hooks(job, analysis)
        return JobStatus.SUCCEEDED

    async def _fail(self, job: AnalysisJob, message: str) -> Optional[str]:
        try:
            status = await asyncio.to_thread(self.store.mark_failed, job, message)
        except Exception:
            logger.exception("status_write_failed", extra={"target": JobStatus.FAILED})
            return None
        if status == JobStatus.DEAD:
            logger.error("job_dead", extra={"attempts": job.attempts + 1, "error": message})
        elif status == JobStatus.FAILED:
            logger.warning("job_failed", extra={"attempts": job.attempts + 1, "error": message})
        else:
            logger.error("status_transition_lost", extra={"target": JobStatus.FAILED})
        return status

    async def _run_hooks(self, job: AnalysisJob, analysis: PrimaryAnalysis) -> None:
        for hook in self.hooks:
            try:
                await asyncio.wait_for(hook.after_success(job, analysis), timeout=self.config.HOOK_TIMEOUT)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    "post_commit_hook_failed",
                    extra={"hook": type(hook).__name__, "error": _describe(exc)},
                )
