"""Claude vision analyzer producing segment summaries, entities and events."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import time
from typing import Any, List, Optional, Sequence, Tuple

import anthropic
from pydantic import ValidationError

from .analysis import AnalysisError
from .schemas import PrimaryAnalysis
from .segment import extract_frames

logger = logging.getLogger(__name__)

EVENT_TYPES = (
    "Crime",
    "Medical Emergency",
    "Traffic Incident",
    "Property Damage",
    "Safety Hazard",
    "Suspicious Activity",
    "Normal Activity",
    "Camera Interference",
)

_PROMPT = """You are reviewing {count} frames sampled in order from one video segment.
Frame timestamps (seconds from the start of the segment):
{frame_times}

Provide:
1. summary: a concise 2-3 sentence description of what happens in the segment.
2. tags: up to 10 relevant keywords.
3. entities: people, objects, locations and activities you can see, each with
   "type" (person, object, location, activity, ...), "name" (a short natural
   description) and "confidence" between 0 and 1.
4. events: only genuinely noteworthy events a human reviewer would care about.
   Return an empty list when nothing significant happens. For each event give
   "name", "description" (natural language, describe people by appearance or
   action, never by index), "severity" (one of Minor, Medium, High),
   "type" (one of {event_types}), "timestamp_seconds" (seconds from the start
   of the segment) and optionally "affected_entity_ids" (0-based indices into
   your entities list).

Severity guide:
- High: needs immediate attention (theft in progress, assault, medical emergency, fire, weapon).
- Medium: unusual or suspicious and worth review (trespassing, safety violation, damage).
- Minor: routine but worth noting (delivery, maintenance).

RESPOND WITH ONLY A JSON OBJECT:
{{"summary": "...", "tags": ["..."], "entities": [{{"type": "person", "name": "...", "confidence": 0.9}}],
 "events": [{{"name": "...", "description": "...", "severity": "Minor", "type": "Normal Activity", "timestamp_seconds": 12.0, "affected_entity_ids": [0]}}]}}
"""


def clean_json_response(response_text: str) -> str:
    """Strip markdown fences and surrounding prose from a model reply.

    Handles ```json fenced blocks, bare ``` fences, preamble text before
    the JSON and trailing text after it.
    """
    if not response_text:
        return response_text

    cleaned = response_text.strip()

    if "```json" in cleaned:
        parts = cleaned.split("```json")
        if len(parts) > 1:
            cleaned = parts[1].split("```")[0].strip()
    elif "```" in cleaned:
        parts = cleaned.split("```")
        if len(parts) >= 3:
            cleaned = parts[1].strip()

    json_start = -1
    for char in ["{", "["]:
        pos = cleaned.find(char)
        if pos != -1 and (json_start == -1 or pos < json_start):
            json_start = pos

    json_end = -1
    for char in ["}", "]"]:
        pos = cleaned.rfind(char)
        if pos != -1 and pos > json_end:
            json_end = pos

    if json_start != -1 and json_end != -1 and json_end > json_start:
        cleaned = cleaned[json_start : json_end + 1]

    return cleaned


def parse_analysis(response_text: str) -> PrimaryAnalysis:
    """Parse and validate a model reply into a :class:`PrimaryAnalysis`."""

    cleaned = clean_json_response(response_text)
    try:
        payload = json.loads(cleaned)
    except (TypeError, json.JSONDecodeError) as exc:
        raise AnalysisError(f"analyzer returned invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise AnalysisError(f"analyzer returned {type(payload).__name__}, expected an object")
    try:
        analysis = PrimaryAnalysis.model_validate(payload)
    except ValidationError as exc:
        raise AnalysisError(f"analyzer output failed validation: {exc.error_count()} error(s)") from exc
    analysis.raw = payload
    return analysis


def evenly_spaced(frames: Sequence[Tuple[bytes, float]], limit: int) -> List[Tuple[bytes, float]]:
    if limit <= 0 or len(frames) <= limit:
        return list(frames)
    step = len(frames) / float(limit)
    return [frames[int(i * step)] for i in range(limit)]


class ClaudeSegmentAnalyzer:
    """Describe a segment by sending sampled keyframes to Claude."""

    def __init__(
        self,
        api_key: Optional[str],
        *,
        model: str,
        max_tokens: int = 4000,
        frame_fps: float = 0.5,
        max_frames: int = 30,
        client: Any = None,
    ):
        if client is None:
            if not api_key:
                raise RuntimeError("Missing ANTHROPIC_API_KEY for the primary analyzer")
            client = anthropic.Anthropic(api_key=api_key)
        self.client = client
        self.model = model
        self.max_tokens = int(max_tokens)
        self.frame_fps = float(frame_fps)
        self.max_frames = int(max_frames)

    def build_content(self, keyframes: Sequence[Tuple[bytes, float]]) -> List[dict]:
        content: List[dict] = []
        for frame_bytes, _ in keyframes:
            content.append(
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": "image/jpeg",
                        "data": base64.standard_b64encode(frame_bytes).decode("utf-8"),
                    },
                }
            )
        frame_times = "\n".join(f"Frame {i}: {t:.1f}s" for i, (_, t) in enumerate(keyframes))
        content.append(
            {
                "type": "text",
                "text": _PROMPT.format(
                    count=len(keyframes),
                    frame_times=frame_times,
                    event_types=", ".join(EVENT_TYPES),
                ),
            }
        )
        return content

    def _complete(self, content: List[dict]) -> str:
        start = time.time()
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=0.0,
                messages=[{"role": "user", "content": content}],
            )
        except anthropic.APIError as exc:
            raise AnalysisError(f"Claude API error: {exc}") from exc
        text = "".join(
            getattr(block, "text", "") for block in response.content if getattr(block, "type", "") == "text"
        ).strip()
        usage = getattr(response, "usage", None)
        logger.info(
            "claude_response",
            extra={
                "elapsed_sec": round(time.time() - start, 1),
                "chars": len(text),
                "input_tokens": getattr(usage, "input_tokens", None),
                "output_tokens": getattr(usage, "output_tokens", None),
            },
        )
        return text

    async def analyze(self, media: bytes) -> PrimaryAnalysis:
        frames = await extract_frames(media, self.frame_fps)
        keyframes = evenly_spaced(frames, self.max_frames)
        if not keyframes:
            raise AnalysisError("no keyframes could be extracted from the segment")
        content = self.build_content(keyframes)
        # the SDK client is blocking
        text = await asyncio.to_thread(self._complete, content)
        analysis = parse_analysis(text)
        logger.info(
            "primary_analysis_complete",
            extra={
                "tags": len(analysis.tags),
                "entities": len(analysis.entities),
                "events": len(analysis.events),
            },
        )
        return analysis
