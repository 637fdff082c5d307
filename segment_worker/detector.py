"""Per-frame object detection against a hosted inference endpoint."""

from __future__ import annotations

import base64
import logging
from typing import Any, Dict, List, Optional

import httpx

from .analysis import AnalysisError
from .schemas import BoundingBox, Detection, DetectionFrame
from .segment import extract_frames

logger = logging.getLogger(__name__)


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def to_detections(
    payload: Dict[str, Any],
    *,
    min_confidence: float,
    class_name: str,
) -> List[Detection]:
    """Convert centre-anchored pixel predictions into normalised top-left boxes."""

    image = payload.get("image") or {}
    width = float(image.get("width") or 0)
    height = float(image.get("height") or 0)
    if width <= 0 or height <= 0:
        return []

    out: List[Detection] = []
    for pred in payload.get("predictions") or []:
        try:
            confidence = float(pred["confidence"])
            if confidence < min_confidence:
                continue
            w = float(pred["width"])
            h = float(pred["height"])
            left = float(pred["x"]) - w / 2
            top = float(pred["y"]) - h / 2
        except (KeyError, TypeError, ValueError):
            continue
        out.append(
            Detection(
                class_name=class_name,
                confidence=confidence,
                bbox=BoundingBox(
                    x=_clamp01(left / width),
                    y=_clamp01(top / height),
                    width=_clamp01(w / width),
                    height=_clamp01(h / height),
                ),
            )
        )
    return out


class HttpObjectDetector:
    """Samples frames from a segment and runs each through a detection model."""

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str] = None,
        *,
        fps: float = 8.0,
        min_confidence: float = 0.3,
        class_name: str = "person",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not api_url:
            raise RuntimeError("Missing DETECTOR_API_URL for the object detector")
        self.api_url = api_url
        self.api_key = api_key
        self.fps = float(fps)
        self.min_confidence = float(min_confidence)
        self.class_name = class_name
        self.timeout = timeout
        self._transport = transport

    async def _detect_frame(self, client: httpx.AsyncClient, frame: bytes) -> List[Detection]:
        params = {"api_key": self.api_key} if self.api_key else None
        try:
            response = await client.post(
                self.api_url,
                params=params,
                content=base64.b64encode(frame),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            # one bad frame should not sink the batch
            logger.warning("detector_frame_error", extra={"error": str(exc)[:200]})
            return []
        return to_detections(payload, min_confidence=self.min_confidence, class_name=self.class_name)

    async def analyze(self, media: bytes, offset: float) -> List[DetectionFrame]:
        frames = await extract_frames(media, self.fps, offset)
        if not frames:
            raise AnalysisError("no frames could be extracted for object detection")

        results: List[DetectionFrame] = []
        with_hits = 0
        total = 0
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for index, (frame, timestamp) in enumerate(frames):
                detections = await self._detect_frame(client, frame)
                results.append(
                    DetectionFrame(frame_timestamp=timestamp, frame_index=index, detections=detections)
                )
                if detections:
                    with_hits += 1
                    total += len(detections)

        logger.info(
            "detection_complete",
            extra={"frames": len(results), "frames_with_detections": with_hits, "detections": total},
        )
        return results
