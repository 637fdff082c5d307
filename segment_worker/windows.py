from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import List, Optional

from .schemas import Window


def source_epoch(created_at: datetime) -> int:
    """Whole epoch seconds at which a live source started."""

    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return int(math.floor(created_at.timestamp()))


def complete_windows(
    duration_sec: float,
    window_size: int,
    *,
    is_live: bool = False,
    epoch: Optional[int] = None,
) -> List[Window]:
    """Return every complete ``[i*W, (i+1)*W)`` window of a source.

    A trailing partial window is never returned, so a source shorter than
    one window yields an empty list. Live windows are additionally
    projected onto absolute program time by adding ``epoch``.
    """

    size = int(window_size)
    if size <= 0:
        raise ValueError(f"window_size must be positive, got {window_size!r}")
    if is_live and epoch is None:
        raise ValueError("live windows need the source epoch")

    duration = max(0.0, float(duration_sec or 0.0))
    count = int(math.floor(duration / size))
    base = int(epoch) if is_live else 0

    out: List[Window] = []
    for i in range(count):
        start = i * size
        end = start + size
        out.append(
            Window(
                relative_start=start,
                relative_end=end,
                window_start=base + start,
                window_end=base + end,
            )
        )
    return out
