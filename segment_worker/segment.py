import asyncio
import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from typing import Iterator, List, Tuple

logger = logging.getLogger(__name__)


class SegmentFetchError(RuntimeError):
    """Raised when a segment cannot be fetched or transcoded."""


async def _run(cmd: list[str]) -> tuple[bytes, bytes]:
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise SegmentFetchError(f"{cmd[0]} not found on PATH") from exc
    try:
        out, err = await proc.communicate()
    except asyncio.CancelledError:
        # timed out or shutting down; do not leave ffmpeg running
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        raise
    if proc.returncode != 0:
        raise SegmentFetchError(
            f"ffmpeg error ({proc.returncode}): {err.decode(errors='ignore')[-400:]}"
        )
    return out, err


@contextmanager
def scratch_dir(prefix: str) -> Iterator[str]:
    """Private temporary directory removed on every exit path."""

    path = tempfile.mkdtemp(prefix=prefix)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


async def transmux_hls(url: str) -> bytes:
    """Fetch an HLS playlist and remux it into a single MP4, returning the bytes."""

    with scratch_dir("segment-") as tmp:
        dst = os.path.join(tmp, "segment.mp4")
        cmd = [
            "ffmpeg",
            "-hide_banner",
            "-loglevel",
            "error",
            "-protocol_whitelist",
            "file,http,https,tcp,tls",
            "-reconnect",
            "1",
            "-reconnect_streamed",
            "1",
            "-reconnect_delay_max",
            "5",
            "-live_start_index",
            "-1",
            "-i",
            url,
            "-c:v",
            "copy",
            "-c:a",
            "copy",
            "-f",
            "mp4",
            "-movflags",
            "+faststart",
            "-y",
            dst,
        ]
        await _run(cmd)
        with open(dst, "rb") as fh:
            data = fh.read()
    if not data:
        raise SegmentFetchError("ffmpeg produced an empty segment")
    logger.info("segment_transmuxed", extra={"bytes": len(data)})
    return data


async def extract_frames(media: bytes, fps: float, offset: float = 0.0) -> List[Tuple[bytes, float]]:
    """Sample JPEG frames at ``fps``; timestamps are ``offset + index / fps``."""

    if fps <= 0:
        raise ValueError(f"fps must be positive, got {fps!r}")
    with scratch_dir("frames-") as tmp:
        src = os.path.join(tmp, "input.mp4")
        with open(src, "wb") as fh:
            fh.write(media)
        pattern = os.path.join(tmp, "frame-%05d.jpg")
        cmd = [
            "ffmpeg",
            "-hide_banner",
            "-loglevel",
            "error",
            "-i",
            src,
            "-vf",
            f"fps={fps},scale='min(1280,iw)':-2",
            "-q:v",
            "2",
            "-y",
            pattern,
        ]
        await _run(cmd)
        names = sorted(n for n in os.listdir(tmp) if n.startswith("frame-") and n.endswith(".jpg"))
        frames: List[Tuple[bytes, float]] = []
        for i, name in enumerate(names):
            with open(os.path.join(tmp, name), "rb") as fh:
                frames.append((fh.read(), round(offset + i / fps, 3)))
    logger.debug("frames_extracted", extra={"count": len(frames), "fps": fps, "offset": offset})
    return frames
