"""Interfaces of the two analysis services a job fans out to."""

from __future__ import annotations

from typing import List, Protocol

from .schemas import DetectionFrame, PrimaryAnalysis


class AnalysisError(RuntimeError):
    """Raised when an analyzer cannot produce a usable result."""


class PrimaryAnalyzer(Protocol):
    """Descriptive analyzer; its failure fails the job."""

    async def analyze(self, media: bytes) -> PrimaryAnalysis:
        ...


class SecondaryAnalyzer(Protocol):
    """Object detector; its failure is tolerated."""

    async def analyze(self, media: bytes, offset: float) -> List[DetectionFrame]:
        ...
