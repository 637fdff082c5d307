"""Turns eligible sources into queued analysis jobs."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from .loops import PeriodicTask
from .models import Source, SourceKind
from .registry import RegistryError, SourceRegistry
from .store import JobStore
from .windows import complete_windows, source_epoch

logger = logging.getLogger(__name__)


class SegmentScheduler(PeriodicTask):
    """Scan sources and enqueue one job per complete window.

    Re-running a scan never duplicates work: the store ignores windows it
    already holds. A source that has stopped being live is marked complete
    after its scan, whether or not it produced any window.
    """

    name = "scheduler"

    def __init__(
        self,
        store: JobStore,
        registry: Optional[SourceRegistry],
        *,
        window_size: int,
        live_window_size: int,
        interval: float = 60.0,
    ):
        super().__init__(interval)
        self.store = store
        self.registry = registry
        self.window_size = int(window_size)
        self.live_window_size = int(live_window_size)

    async def tick(self) -> None:
        await asyncio.to_thread(self.run_once)

    def run_once(self) -> Dict[str, int]:
        sources = self.store.list_schedulable_sources()
        summary = {"sources": len(sources), "enqueued": 0, "completed": 0, "errors": 0}
        for source in sources:
            try:
                inserted, completed = self.schedule_source(source)
            except Exception:
                summary["errors"] += 1
                logger.exception("schedule_source_failed", extra={"source_id": source.id})
                continue
            summary["enqueued"] += inserted
            summary["completed"] += int(completed)
        logger.info("schedule_scan_complete", extra=summary)
        return summary

    def _live_duration(self, source: Source) -> float:
        cached = float(source.duration_seconds or 0.0)
        if self.registry is None:
            return cached
        try:
            return self.registry.get_duration(source.id)
        except RegistryError as exc:
            logger.warning(
                "live_duration_fallback",
                extra={"source_id": source.id, "cached_duration": cached, "error": str(exc)},
            )
            return cached

    def _live_playback_ref(self, source: Source) -> Optional[str]:
        # live segments are cut from the parent stream's playlist
        if self.registry is not None and source.stream_id:
            try:
                ref = self.registry.get_playback_ref(source.stream_id)
            except RegistryError as exc:
                logger.warning(
                    "live_playback_ref_fallback",
                    extra={"source_id": source.id, "stream_id": source.stream_id, "error": str(exc)},
                )
            else:
                if ref:
                    return ref
        return source.playback_ref

    def schedule_source(self, source: Source) -> tuple[int, bool]:
        """Enqueue the source's complete windows; returns (inserted, marked_complete)."""

        if source.is_live:
            kind = SourceKind.LIVE
            duration = self._live_duration(source)
            playback_ref = self._live_playback_ref(source)
            windows = complete_windows(
                duration,
                self.live_window_size,
                is_live=True,
                epoch=source_epoch(source.created_at),
            )
        else:
            kind = SourceKind.FINISHED
            duration = float(source.duration_seconds or 0.0)
            playback_ref = source.playback_ref
            windows = complete_windows(duration, self.window_size)

        inserted = 0
        if not playback_ref:
            logger.warning("source_missing_playback_ref", extra={"source_id": source.id})
        elif windows:
            inserted = self.store.enqueue_windows(
                source_kind=kind,
                source_id=source.id,
                playback_ref=playback_ref,
                windows=windows,
            )
            logger.info(
                "windows_enqueued",
                extra={
                    "source_id": source.id,
                    "source_kind": kind,
                    "duration": duration,
                    "windows": len(windows),
                    "inserted": inserted,
                },
            )

        completed = False
        if not source.is_live:
            completed = self.store.mark_source_complete(source.id)
            logger.info("source_analysis_complete", extra={"source_id": source.id, "inserted": inserted})
        return inserted, completed
