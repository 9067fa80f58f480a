"""Transducer transcription delegated to an external sidecar executable."""

import json
import logging
import subprocess
import tempfile
import time
from pathlib import Path

import numpy as np
import soundfile

from dictation_stream._types import TranscriptionResult
from dictation_stream.engine import InferenceError, ModelNotFoundError, SpeechEngine

logger = logging.getLogger(__name__)


class SidecarEngine(SpeechEngine):
    """Runs one sidecar process per window.

    The window is written to a temporary mono float32 WAV whose path is the
    sidecar's only argument. The sidecar prints one JSON object:
    ``{"text", "confidence", "processing_time_ms", "error"}``.
    """

    required_sample_rate = 16000
    min_duration_secs = 0.1

    def __init__(self, executable: str | Path, timeout: float | None = None):
        """Initialize sidecar engine.

        Args:
            executable: Path to the sidecar binary
            timeout: Optional per-call limit in seconds

        Raises:
            ModelNotFoundError: If the executable does not exist
        """
        executable = Path(executable)
        if not executable.exists():
            raise ModelNotFoundError(f"Transducer sidecar not found: {executable}")

        self.executable = executable
        self.timeout = timeout
        logger.info("SidecarEngine initialized with sidecar: %s", executable)

    @property
    def name(self) -> str:
        return "Parakeet Sidecar"

    @property
    def model_display_name(self) -> str:
        return "Parakeet TDT 0.6B v3 (Sidecar)"

    def _write_temp_wav(self, audio: np.ndarray, sample_rate: int) -> Path:
        fd, name = tempfile.mkstemp(suffix=".wav", prefix="dictation_stream_")
        path = Path(name)
        try:
            with open(fd, "wb") as f:
                soundfile.write(
                    f,
                    np.asarray(audio, dtype=np.float32),
                    sample_rate,
                    subtype="FLOAT",
                    format="WAV",
                )
        except Exception as e:
            path.unlink(missing_ok=True)
            raise InferenceError(f"Failed to write temp WAV: {e}") from e
        return path

    def transcribe(self, audio: np.ndarray, sample_rate: int) -> TranscriptionResult:
        """Transcribe one 16 kHz window through the sidecar.

        Raises:
            InvalidSampleRateError: If ``sample_rate`` is not 16000
            AudioTooShortError: If the window is shorter than 0.1 s
            InferenceError: On non-zero exit, reported error, bad output or timeout
        """
        start_time = time.perf_counter()
        duration_seconds = self._check_input(audio, sample_rate)

        temp_wav = self._write_temp_wav(audio, sample_rate)
        cmd = [str(self.executable), str(temp_wav)]
        logger.debug("Executing sidecar: %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                stdin=None,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise InferenceError(f"Sidecar timed out after {self.timeout}s") from e
        except OSError as e:
            raise InferenceError(f"Failed to run sidecar: {e}") from e
        finally:
            try:
                temp_wav.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Error deleting temp file %s: %s", temp_wav, e)

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace") if result.stderr else ""
            raise InferenceError(
                f"Sidecar failed with exit code {result.returncode}: {stderr.strip()}"
            )

        stdout = result.stdout.decode("utf-8", errors="replace") if result.stdout else ""
        try:
            payload = json.loads(stdout)
            if not isinstance(payload, dict):
                raise ValueError("expected a JSON object")
            if payload.get("error") is not None:
                raise InferenceError(str(payload["error"]))
            text = payload["text"]
            if not isinstance(text, str):
                raise TypeError(f"text must be a string, got {type(text).__name__}")
            confidence = payload.get("confidence", 0.0)
            if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
                raise TypeError(
                    f"confidence must be a number, got {type(confidence).__name__}"
                )
            confidence = float(confidence)
        except InferenceError:
            raise
        except (ValueError, KeyError, TypeError) as e:
            raise InferenceError(
                f"Failed to parse sidecar output: {e} (output: {stdout.strip()})"
            ) from e

        processing_time_ms = int((time.perf_counter() - start_time) * 1000)
        logger.info(
            "Sidecar transcription completed in %dms (sidecar reported %sms): %d chars",
            processing_time_ms,
            payload.get("processing_time_ms"),
            len(text),
        )

        return TranscriptionResult(
            text=text,
            confidence=min(1.0, max(0.0, confidence)),
            duration_seconds=duration_seconds,
            processing_time_ms=processing_time_ms,
            detected_language="auto",
            timestamp=int(time.time()),
            model_used=self.model_display_name,
        )
