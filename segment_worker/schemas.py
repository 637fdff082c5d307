from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

Severity = Literal["Minor", "Medium", "High"]

EventType = Literal[
    "Crime",
    "Medical Emergency",
    "Traffic Incident",
    "Property Damage",
    "Safety Hazard",
    "Suspicious Activity",
    "Normal Activity",
    "Camera Interference",
]


class Window(BaseModel):
    """One complete analysis window of a source."""

    relative_start: int
    relative_end: int
    # absolute epoch seconds for live sources, equal to the relative range otherwise
    window_start: int
    window_end: int


class Entity(BaseModel):
    type: str
    name: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class AnalysisEventItem(BaseModel):
    name: str
    description: str
    severity: Severity
    type: EventType
    timestamp_seconds: float = Field(ge=0.0)
    affected_entity_ids: List[int] = Field(default_factory=list)

    @field_validator("affected_entity_ids", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class PrimaryAnalysis(BaseModel):
    """Validated output of the primary (descriptive) analyzer."""

    summary: str
    tags: List[str] = Field(default_factory=list)
    entities: List[Entity] = Field(default_factory=list)
    events: List[AnalysisEventItem] = Field(default_factory=list)
    raw: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("tags")
    @classmethod
    def _limit_tags(cls, value: List[str]) -> List[str]:
        cleaned = [t.strip() for t in value if t and t.strip()]
        return cleaned[:10]


class BoundingBox(BaseModel):
    """Top-left anchored box in normalised [0, 1] image coordinates."""

    x: float
    y: float
    width: float
    height: float


class Detection(BaseModel):
    class_name: str = Field(alias="class")
    confidence: float
    bbox: BoundingBox

    model_config = {"populate_by_name": True}


class DetectionFrame(BaseModel):
    frame_timestamp: float
    frame_index: int
    detections: List[Detection] = Field(default_factory=list)


class SegmentAddress(BaseModel):
    """Everything the segment transport needs to fetch one window."""

    source_kind: Literal["live", "finished"]
    playback_ref: str
    start: int
    end: int
    url: str


class QueueStats(BaseModel):
    total: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    by_source_kind: Dict[str, int] = Field(default_factory=dict)
    oldest_queued_age_sec: Optional[int] = None
    last_succeeded_age_sec: Optional[int] = None
