"""Placeholder engine used when no real runtime can be initialized."""

import logging
import time

import numpy as np

from dictation_stream._types import TranscriptionResult
from dictation_stream.engine import SpeechEngine

logger = logging.getLogger(__name__)


class MockEngine(SpeechEngine):
    """Returns a descriptive mock transcript without running any model."""

    required_sample_rate = None
    min_duration_secs = 0.0

    def __init__(self, language: str = "en"):
        self.language = language
        logger.info("Mock engine initialized (language=%s)", language)

    @property
    def name(self) -> str:
        return "Mock"

    @property
    def model_display_name(self) -> str:
        return "Mock Engine"

    def transcribe(self, audio: np.ndarray, sample_rate: int) -> TranscriptionResult:
        start = time.perf_counter()
        duration_seconds = self._check_input(audio, sample_rate)
        text = f"[Mock] {duration_seconds:.1f}s of audio transcribed ({self.language})"

        return TranscriptionResult(
            text=text,
            confidence=0.92,
            duration_seconds=duration_seconds,
            processing_time_ms=int((time.perf_counter() - start) * 1000) + 100,
            detected_language=self.language,
            timestamp=int(time.time()),
            model_used=self.model_display_name,
        )
