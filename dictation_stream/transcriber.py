"""Audio transcription via Faster Whisper."""

import logging
import math
import re
import threading
import time

import numpy as np

from dictation_stream._types import TranscriptionResult
from dictation_stream.engine import EngineInitError, InferenceError, SpeechEngine

logger = logging.getLogger(__name__)


class WhisperEngine(SpeechEngine):
    """Encapsulates a Faster Whisper model behind the speech engine contract.

    The model is loaded at construction so a failed load never reaches the
    engine slot. Calls into the model are serialized by an internal lock.
    """

    required_sample_rate = 16000
    min_duration_secs = 0.5

    def __init__(
        self,
        model_name: str = "base",
        device: str = "cpu",
        compute_type: str = "int8",
        model_directory: str | None = None,
        beam_size: int = 5,
        language: str | None = None,
    ):
        """Initialize and load the Whisper model.

        Args:
            model_name: Faster Whisper model name (tiny, base, small, etc.)
            device: Device to run on (cpu, cuda, auto)
            compute_type: Compute precision (int8, float16, float32)
            model_directory: Custom cache directory for model weights
            beam_size: Beam search width for decoding
            language: Fixed language code, or None to auto-detect

        Raises:
            EngineInitError: If the model fails to load
        """
        self.model_name = model_name
        self.device = device
        self.compute_type = compute_type
        self.model_directory = model_directory
        self.beam_size = beam_size
        self.language = language
        self._model_lock = threading.Lock()
        self._model = self._load_model()

    def _load_model(self):
        logger.info(
            "Loading Faster Whisper model: %s (device=%s, compute_type=%s)",
            self.model_name,
            self.device,
            self.compute_type,
        )
        try:
            from faster_whisper import WhisperModel

            start_time = time.perf_counter()
            model = WhisperModel(
                self.model_name,
                device=self.device,
                compute_type=self.compute_type,
                download_root=self.model_directory,
            )
            duration = time.perf_counter() - start_time
            logger.info("Model loaded successfully in %.2f seconds", duration)
            return model
        except Exception as e:
            logger.error(
                "Failed to load model %s on device %s: %s",
                self.model_name,
                self.device,
                e,
            )
            raise EngineInitError(
                f"Failed to load Whisper model '{self.model_name}' on device "
                f"'{self.device}' with compute_type '{self.compute_type}': {e}"
            ) from e

    @property
    def name(self) -> str:
        return "Whisper"

    @property
    def model_display_name(self) -> str:
        return f"Whisper {self.model_name.capitalize()}"

    def transcribe(self, audio: np.ndarray, sample_rate: int) -> TranscriptionResult:
        """Transcribe one 16 kHz window.

        Raises:
            InvalidSampleRateError: If ``sample_rate`` is not 16000
            AudioTooShortError: If the window is shorter than 0.5 s
            InferenceError: If the model fails
        """
        start_time = time.perf_counter()
        duration_seconds = self._check_input(audio, sample_rate)
        audio = np.clip(np.asarray(audio, dtype=np.float32), -1.0, 1.0)

        try:
            with self._model_lock:
                segments, info = self._model.transcribe(
                    audio,
                    language=self.language,
                    beam_size=self.beam_size,
                    condition_on_previous_text=False,
                )
                segments = list(segments)
        except Exception as e:
            logger.error("Whisper transcription failed: %s", e, exc_info=True)
            raise InferenceError(f"Whisper transcription failed: {e}") from e

        text = self._normalize_text(" ".join((seg.text or "").strip() for seg in segments))
        confidence = self._confidence(segments)
        detected_language = getattr(info, "language", None) or self.language

        processing_time_ms = int((time.perf_counter() - start_time) * 1000)
        logger.info(
            "Whisper transcription completed in %dms: %d segments, %d chars",
            processing_time_ms,
            len(segments),
            len(text),
        )

        return TranscriptionResult(
            text=text,
            confidence=confidence,
            duration_seconds=duration_seconds,
            processing_time_ms=processing_time_ms,
            detected_language=detected_language,
            timestamp=int(time.time()),
            model_used=self.model_display_name,
        )

    @staticmethod
    def _confidence(segments: list) -> float:
        """Mean segment log-probability mapped back to a [0, 1] probability."""
        logprobs = [
            float(seg.avg_logprob)
            for seg in segments
            if isinstance(getattr(seg, "avg_logprob", None), (int, float))
        ]
        if not logprobs:
            return 0.0
        return min(1.0, max(0.0, math.exp(sum(logprobs) / len(logprobs))))

    def _normalize_text(self, text: str) -> str:
        """Post-process transcribed text.

        Applies cleaning: strip whitespace, remove duplicate spaces/newlines,
        and capitalize the first letter.

        Args:
            text: Raw transcribed text

        Returns:
            Normalized text
        """
        text = text.strip()
        text = re.sub(r"\s+", " ", text)
        text = re.sub(r"\.{2,}", ".", text)
        text = re.sub(r"\s+([.,!?;:])", r"\1", text)

        if len(text) > 0 and text[0].islower():
            text = text[0].upper() + text[1:]

        return text
