"""Offline transcription via Vosk, optionally constrained to a fixed grammar."""

import json
import logging
import time
from collections.abc import Sequence
from pathlib import Path

import numpy as np

from dictation_stream._types import TranscriptionResult
from dictation_stream.engine import (
    EngineInitError,
    InferenceError,
    ModelNotFoundError,
    SpeechEngine,
)

logger = logging.getLogger(__name__)


def _to_pcm16(audio: np.ndarray) -> bytes:
    samples = np.clip(np.asarray(audio, dtype=np.float32), -1.0, 1.0)
    return (samples * 32767).astype(np.int16).tobytes()


class VoskEngine(SpeechEngine):
    """Kaldi-based recognizer running fully on the CPU.

    When ``grammar`` is given, recognition is restricted to those phrases
    (plus ``[unk]`` for anything else). A fresh recognizer is created per call;
    the loaded model is shared.
    """

    required_sample_rate = None
    min_duration_secs = 0.1

    def __init__(
        self,
        model_path: str | Path,
        grammar: Sequence[str] | None = None,
        language: str | None = None,
    ):
        """Load a Vosk model directory.

        Raises:
            ModelNotFoundError: If the model directory does not exist
            EngineInitError: If vosk is unavailable or the model fails to load
        """
        model_path = Path(model_path)
        if not model_path.is_dir():
            raise ModelNotFoundError(f"Vosk model not found: {model_path}")

        self.model_path = model_path
        self.grammar = list(grammar) if grammar else None
        self.language = language

        logger.info(
            "Loading Vosk model from %s (grammar=%s)",
            model_path,
            f"{len(self.grammar)} phrases" if self.grammar else "none",
        )
        try:
            from vosk import Model

            self._model = Model(str(model_path))
        except Exception as e:
            logger.error("Failed to load Vosk model %s: %s", model_path, e)
            raise EngineInitError(f"Failed to load Vosk model '{model_path}': {e}") from e

    @property
    def name(self) -> str:
        return "Vosk"

    @property
    def model_display_name(self) -> str:
        return f"Vosk {self.model_path.name}"

    def _recognizer(self, sample_rate: int):
        from vosk import KaldiRecognizer

        if self.grammar:
            phrases = self.grammar + ["[unk]"]
            recognizer = KaldiRecognizer(self._model, sample_rate, json.dumps(phrases))
        else:
            recognizer = KaldiRecognizer(self._model, sample_rate)
        recognizer.SetWords(True)
        return recognizer

    def transcribe(self, audio: np.ndarray, sample_rate: int) -> TranscriptionResult:
        """Transcribe one window at any positive sample rate.

        Raises:
            InvalidSampleRateError: If ``sample_rate`` is not positive
            AudioTooShortError: If the window is shorter than 0.1 s
            InferenceError: If the recognizer fails
        """
        start_time = time.perf_counter()
        duration_seconds = self._check_input(audio, sample_rate)

        try:
            recognizer = self._recognizer(sample_rate)
            recognizer.AcceptWaveform(_to_pcm16(audio))
            data = json.loads(recognizer.FinalResult())
        except Exception as e:
            logger.error("Vosk transcription failed: %s", e, exc_info=True)
            raise InferenceError(f"Vosk transcription failed: {e}") from e

        text = str(data.get("text", "")).strip()
        words = [w for w in data.get("result") or [] if isinstance(w, dict)]
        confs = [float(w["conf"]) for w in words if "conf" in w]
        confidence = sum(confs) / len(confs) if confs else 0.0

        processing_time_ms = int((time.perf_counter() - start_time) * 1000)
        logger.info(
            "Vosk transcription completed in %dms: %d words", processing_time_ms, len(words)
        )

        return TranscriptionResult(
            text=text,
            confidence=min(1.0, max(0.0, confidence)),
            duration_seconds=duration_seconds,
            processing_time_ms=processing_time_ms,
            detected_language=self.language,
            timestamp=int(time.time()),
            model_used=self.model_display_name,
        )
