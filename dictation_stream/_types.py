"""Shared types and dataclasses for cross-module use."""

from dataclasses import dataclass


@dataclass(frozen=True)
class TranscriptionResult:
    """Result of a single ``transcribe`` call."""

    text: str
    confidence: float
    duration_seconds: float
    processing_time_ms: int
    detected_language: str | None
    timestamp: int
    model_used: str | None = None


@dataclass(frozen=True)
class StreamingChunk:
    """Transcript update emitted by a streaming session."""

    text: str
    is_final: bool
    duration_seconds: float
