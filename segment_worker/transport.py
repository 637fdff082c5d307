"""Segment addressing and retrieval."""

from __future__ import annotations

from typing import Protocol, Tuple
from urllib.parse import urlencode

from .models import AnalysisJob, SourceKind
from .schemas import SegmentAddress
from .segment import SegmentFetchError, transmux_hls

__all__ = ["HlsSegmentTransport", "SegmentFetchError", "SegmentTransport", "resolve_segment_address"]


class SegmentTransport(Protocol):
    """Turns a segment address into raw media bytes."""

    async def fetch(self, address: SegmentAddress) -> bytes:
        """Return the media for ``address`` or raise."""


def resolve_segment_address(
    job: AnalysisJob,
    *,
    base_url: str,
    live_params: Tuple[str, str],
    finished_params: Tuple[str, str],
) -> SegmentAddress:
    """Build the playlist URL for a job's window.

    Live jobs are addressed by absolute program time, finished ones by
    offsets into the recording; ``window_start``/``window_end`` already
    carry the matching scheme.
    """

    if job.source_kind == SourceKind.LIVE:
        start_key, end_key = live_params
    elif job.source_kind == SourceKind.FINISHED:
        start_key, end_key = finished_params
    else:
        raise ValueError(f"unknown source kind: {job.source_kind!r}")

    query = urlencode({start_key: int(job.window_start), end_key: int(job.window_end)})
    return SegmentAddress(
        source_kind=job.source_kind,
        playback_ref=job.playback_ref,
        start=int(job.window_start),
        end=int(job.window_end),
        url=f"{base_url.rstrip('/')}/{job.playback_ref}.m3u8?{query}",
    )


class HlsSegmentTransport:
    """Fetches a clipped HLS rendition and remuxes it to MP4 with ffmpeg."""

    async def fetch(self, address: SegmentAddress) -> bytes:
        return await transmux_hls(address.url)
