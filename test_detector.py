import asyncio
import base64

import httpx
import pytest

from segment_worker import detector
from segment_worker.analysis import AnalysisError
from segment_worker.detector import HttpObjectDetector, to_detections

PAYLOAD = {
    "image": {"width": 1000, "height": 500},
    "predictions": [
        {"x": 500, "y": 250, "width": 200, "height": 100, "confidence": 0.9, "class": "person"},
        {"x": 20, "y": 480, "width": 100, "height": 100, "confidence": 0.6, "class": "person"},
        {"x": 300, "y": 300, "width": 50, "height": 50, "confidence": 0.1, "class": "person"},
    ],
}


def test_boxes_are_normalised_and_clamped():
    found = to_detections(PAYLOAD, min_confidence=0.3, class_name="person")

    assert len(found) == 2
    centre = found[0].bbox
    assert (centre.x, centre.y, centre.width, centre.height) == (0.4, 0.4, 0.2, 0.2)
    edge = found[1].bbox
    # left edge at -30px and bottom beyond the frame are clamped into [0, 1]
    assert edge.x == 0.0
    assert edge.y == pytest.approx(0.86)
    assert found[1].model_dump(by_alias=True)["class"] == "person"


def test_missing_image_size_yields_nothing():
    assert to_detections({"predictions": PAYLOAD["predictions"]}, min_confidence=0, class_name="p") == []


def test_requires_endpoint():
    with pytest.raises(RuntimeError):
        HttpObjectDetector("")


def test_analyze_posts_frames_and_tolerates_bad_frames(monkeypatch):
    async def fake_frames(media, fps, offset=0.0):
        return [(f"frame{i}".encode(), round(offset + i / fps, 3)) for i in range(3)]

    monkeypatch.setattr(detector, "extract_frames", fake_frames)
    seen = []

    def handler(request):
        body = base64.b64decode(request.content)
        seen.append((body, request.url.params.get("api_key")))
        if body == b"frame1":
            return httpx.Response(500, text="model overloaded")
        return httpx.Response(200, json=PAYLOAD)

    det = HttpObjectDetector(
        "https://detect.example.com/people/3",
        "secret",
        fps=8,
        transport=httpx.MockTransport(handler),
    )

    frames = asyncio.run(det.analyze(b"mp4", 60.0))

    assert [f.frame_timestamp for f in frames] == [60.0, 60.125, 60.25]
    assert [f.frame_index for f in frames] == [0, 1, 2]
    assert [len(f.detections) for f in frames] == [2, 0, 2]
    assert seen[0] == (b"frame0", "secret")


def test_analyze_without_frames_fails(monkeypatch):
    async def no_frames(media, fps, offset=0.0):
        return []

    monkeypatch.setattr(detector, "extract_frames", no_frames)
    det = HttpObjectDetector("https://detect.example.com/m/1")

    with pytest.raises(AnalysisError):
        asyncio.run(det.analyze(b"mp4", 0.0))
