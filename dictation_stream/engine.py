"""Speech engine abstraction, error types and the active-engine slot."""

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

import numpy as np

from dictation_stream._types import TranscriptionResult

if TYPE_CHECKING:
    from dictation_stream.config import Config

logger = logging.getLogger(__name__)

__all__ = [
    "EngineError",
    "EngineInitError",
    "ModelLoadError",
    "ModelNotFoundError",
    "VocabularyError",
    "EngineNotLoadedError",
    "InvalidSampleRateError",
    "AudioTooShortError",
    "InferenceError",
    "DownloadError",
    "SpeechEngine",
    "EngineSlot",
    "build_engine",
]


class EngineError(Exception):
    """Base class for speech engine failures."""

    pass


class EngineInitError(EngineError):
    """Engine could not be constructed (runtime or backend init failure)."""

    pass


class ModelLoadError(EngineInitError):
    """Model files exist but could not be loaded."""

    pass


class ModelNotFoundError(EngineInitError):
    """Model directory or one of its required files is missing."""

    pass


class VocabularyError(EngineInitError):
    """Vocabulary file unreadable or malformed."""

    pass


class EngineNotLoadedError(EngineError):
    """No engine is installed in the slot."""

    pass


class InvalidSampleRateError(EngineError):
    """Input sample rate differs from the rate the engine requires."""

    def __init__(self, sample_rate: int, expected: int = 16000):
        self.sample_rate = sample_rate
        self.expected = expected
        super().__init__(f"Invalid sample rate: {sample_rate}Hz (expected {expected}Hz)")


class AudioTooShortError(EngineError):
    """Input window is shorter than the engine's minimum duration."""

    def __init__(self, duration: float, minimum: float):
        self.duration = duration
        self.minimum = minimum
        super().__init__(
            f"Audio too short: {duration:.3f}s (minimum {minimum:.2f} seconds)"
        )


class InferenceError(EngineError):
    """Model execution failed or produced tensors of an unexpected shape."""

    pass


class DownloadError(EngineError):
    """Model acquisition failed."""

    pass


class SpeechEngine(ABC):
    """Uniform contract over interchangeable speech-to-text backends.

    Implementations block the calling thread for the whole inference and raise
    an ``EngineError`` subclass on failure; there is no partial result.
    """

    #: Required input rate, or None when the backend accepts any positive rate.
    required_sample_rate: int | None = 16000
    min_duration_secs: float = 0.1

    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def model_display_name(self) -> str: ...

    @abstractmethod
    def transcribe(self, audio: np.ndarray, sample_rate: int) -> TranscriptionResult:
        """Transcribe one window of mono float32 samples."""
        raise NotImplementedError

    def _check_input(self, audio: np.ndarray, sample_rate: int) -> float:
        """Validate rate and length, returning the window duration in seconds.

        Raises:
            InvalidSampleRateError: If the rate is not accepted
            AudioTooShortError: If the window is below ``min_duration_secs``
        """
        if self.required_sample_rate is not None:
            if sample_rate != self.required_sample_rate:
                raise InvalidSampleRateError(sample_rate, self.required_sample_rate)
        elif sample_rate <= 0:
            raise InvalidSampleRateError(sample_rate, 16000)

        duration = len(audio) / float(sample_rate)
        if duration < self.min_duration_secs:
            raise AudioTooShortError(duration, self.min_duration_secs)
        return duration


class _ReadWriteLock:
    """Writer-preferring read/write lock.

    A waiting writer blocks new readers; the writer proceeds once in-flight
    readers drain.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        with self._cond:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class EngineSlot:
    """Holds the single active engine.

    ``transcribe`` runs under the shared read lock for the full call; swapping
    the engine takes the exclusive write lock, so a switch never interleaves
    with an in-flight transcription.
    """

    def __init__(self, engine: SpeechEngine | None = None):
        self._lock = _ReadWriteLock()
        self._engine = engine

    @property
    def current(self) -> SpeechEngine | None:
        with self._lock.read_locked():
            return self._engine

    @property
    def is_loaded(self) -> bool:
        return self.current is not None

    def transcribe(self, audio: np.ndarray, sample_rate: int) -> TranscriptionResult:
        """Transcribe with whichever engine is active when the call starts.

        Raises:
            EngineNotLoadedError: If the slot is empty
            EngineError: Whatever the engine raises
        """
        with self._lock.read_locked():
            engine = self._engine
            if engine is None:
                raise EngineNotLoadedError("No speech engine loaded")
            return engine.transcribe(audio, sample_rate)

    def install(self, engine: SpeechEngine) -> SpeechEngine | None:
        """Replace the active engine, returning the previous one."""
        with self._lock.write_locked():
            previous = self._engine
            self._engine = engine
        logger.info(
            "Speech engine switched: %s -> %s",
            previous.model_display_name if previous else "none",
            engine.model_display_name,
        )
        return previous

    def load(self, factory: Callable[[], SpeechEngine]) -> SpeechEngine:
        """Construct an engine and install it.

        Construction happens outside the write lock. If it raises, the error is
        logged and re-raised and the previously active engine stays installed.
        """
        try:
            engine = factory()
        except EngineError as e:
            logger.error("Failed to initialize speech engine: %s", e)
            raise
        except Exception as e:
            logger.error("Failed to initialize speech engine: %s", e, exc_info=True)
            raise EngineInitError(f"Failed to initialize speech engine: {e}") from e

        self.install(engine)
        return engine

    def clear(self) -> SpeechEngine | None:
        """Leave the slot empty, returning the engine that was active."""
        with self._lock.write_locked():
            previous = self._engine
            self._engine = None
        if previous is not None:
            logger.info("Speech engine unloaded: %s", previous.model_display_name)
        return previous


def build_engine(settings: "Config") -> SpeechEngine:
    """Construct the backend selected by ``settings.engine.backend``.

    Backends are imported lazily so unused runtimes are never loaded.

    Raises:
        EngineInitError: If the backend cannot be constructed and
            ``fallback_to_mock`` is disabled
        ValueError: If the backend name is unknown
    """
    backend = settings.engine.backend
    logger.info("Building speech engine: backend=%s", backend)

    try:
        if backend == "whisper":
            from dictation_stream.transcriber import WhisperEngine

            cfg = settings.whisper
            return WhisperEngine(
                model_name=cfg.name,
                device=cfg.device,
                compute_type=cfg.compute_type,
                model_directory=cfg.model_directory,
                beam_size=cfg.beam_size,
                language=cfg.language,
            )
        if backend == "vosk":
            from dictation_stream.transcriber_vosk import VoskEngine

            return VoskEngine(
                model_path=settings.vosk.model_path,
                grammar=settings.vosk.grammar,
            )
        if backend == "transducer":
            from dictation_stream.transducer import TransducerEngine

            return TransducerEngine(
                model_path=settings.transducer.model_path,
                max_symbols_per_step=settings.transducer.max_symbols_per_step,
            )
        if backend == "sidecar":
            from dictation_stream.transcriber_sidecar import SidecarEngine

            return SidecarEngine(
                executable=settings.sidecar.executable,
                timeout=settings.sidecar.timeout,
            )
        if backend == "mock":
            from dictation_stream.transcriber_mock import MockEngine

            return MockEngine()
    except EngineInitError as e:
        if not settings.engine.fallback_to_mock:
            raise
        from dictation_stream.transcriber_mock import MockEngine

        logger.warning("Backend '%s' unavailable (%s); using mock engine", backend, e)
        return MockEngine()

    raise ValueError(f"Unknown backend: {backend}")
