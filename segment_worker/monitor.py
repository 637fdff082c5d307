from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Sequence

from .models import AnalysisResult, JobStatus, SourceKind, utcnow
from .schemas import QueueStats
from .store import JobStore, as_utc

RULE = "=" * 80


def _age(seconds: Optional[int]) -> str:
    return f"{seconds}s ago" if seconds is not None else "N/A"


def _trim(text: Optional[str], limit: int = 60) -> str:
    text = (text or "").strip().replace("\n", " ")
    return text if len(text) <= limit else text[:limit] + "..."


def format_report(
    stats: QueueStats,
    recent: Sequence[AnalysisResult] = (),
    *,
    now: Optional[datetime] = None,
) -> str:
    """Plain-text queue summary for a terminal."""

    now = now or utcnow()
    lines: List[str] = [RULE, "ANALYSIS JOB QUEUE MONITOR", RULE, ""]

    lines.append("Queue Status:")
    lines.append(f"  Total Jobs:       {stats.total}")
    last = len(JobStatus.ALL) - 1
    for i, status in enumerate(JobStatus.ALL):
        branch = "└─" if i == last else "├─"
        label = f"{status.capitalize()}:"
        lines.append(f"  {branch} {label:<14}{stats.by_status.get(status, 0)}")
    lines.append("")

    lines.append("Source Breakdown:")
    last = len(SourceKind.ALL) - 1
    for i, kind in enumerate(SourceKind.ALL):
        branch = "└─" if i == last else "├─"
        label = f"{kind.capitalize()}:"
        lines.append(f"  {branch} {label:<14}{stats.by_source_kind.get(kind, 0)}")
    lines.append("")

    lines.append("Timing:")
    lines.append(f"  Oldest Queued:    {_age(stats.oldest_queued_age_sec)}")
    lines.append(f"  Last Succeeded:   {_age(stats.last_succeeded_age_sec)}")
    lines.append("")

    queued = stats.by_status.get(JobStatus.QUEUED, 0)
    failed = stats.by_status.get(JobStatus.FAILED, 0)
    dead = stats.by_status.get(JobStatus.DEAD, 0)
    if queued:
        lines.append(f"! {queued} jobs waiting in queue")
    if failed or dead:
        lines.append(f"! {failed} failed jobs, {dead} dead-letter jobs")
    if queued or failed or dead:
        lines.append("")

    if recent:
        lines.append("Recent Results:")
        for result in recent:
            age = max(0, int((now - as_utc(result.created_at)).total_seconds()))
            lines.append(f"  [{age}s ago] Job {result.job_id}: {_trim(result.summary)}")
            if result.tags:
                lines.append(f"           Tags: {', '.join(result.tags)}")
        lines.append("")

    lines.append(RULE)
    return "\n".join(lines)


def snapshot(store: JobStore, *, recent: int = 5) -> str:
    now = utcnow()
    return format_report(store.queue_stats(now=now), store.recent_results(recent), now=now)
