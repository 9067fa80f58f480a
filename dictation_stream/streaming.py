"""Windowing of a live sample stream into overlapping transcription chunks."""

import logging
import threading
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamingConfig:
    """Chunking parameters for streaming transcription.

    ``overlap_secs`` must be smaller than ``chunk_duration_secs`` for the
    stream to make progress.
    """

    chunk_duration_secs: float = 2.5
    overlap_secs: float = 0.5
    sample_rate: int = 16000

    def __post_init__(self):
        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        if self.chunk_duration_secs <= 0:
            raise ValueError("chunk_duration_secs must be positive")
        if self.overlap_secs < 0:
            raise ValueError("overlap_secs must be non-negative")
        if self.overlap_secs >= self.chunk_duration_secs:
            logger.warning(
                "overlap_secs (%.3f) >= chunk_duration_secs (%.3f); streaming will not advance",
                self.overlap_secs,
                self.chunk_duration_secs,
            )

    @property
    def chunk_samples(self) -> int:
        return int(round(self.chunk_duration_secs * self.sample_rate))

    @property
    def overlap_samples(self) -> int:
        return int(round(self.overlap_secs * self.sample_rate))


class SampleSink:
    """Growable float32 sample store shared by the capture writer and the reader.

    All access goes through one mutex. Readers receive copies, so CPU-bound
    work never runs while the lock is held.
    """

    def __init__(self, initial_capacity: int = 16000):
        self._lock = threading.Lock()
        self._data = np.zeros(max(1, initial_capacity), dtype=np.float32)
        self._size = 0

    def append(self, samples) -> None:
        samples = np.asarray(samples, dtype=np.float32).reshape(-1)
        if samples.size == 0:
            return
        with self._lock:
            needed = self._size + samples.size
            if needed > len(self._data):
                capacity = len(self._data)
                while capacity < needed:
                    capacity *= 2
                grown = np.zeros(capacity, dtype=np.float32)
                grown[: self._size] = self._data[: self._size]
                self._data = grown
            self._data[self._size : needed] = samples
            self._size = needed

    def __len__(self) -> int:
        with self._lock:
            return self._size

    def slice(self, start: int, end: int | None = None) -> np.ndarray:
        """Copy of ``[start, end)``, clamped to the current length."""
        with self._lock:
            stop = self._size if end is None else min(end, self._size)
            if start >= stop:
                return np.zeros(0, dtype=np.float32)
            return self._data[start:stop].copy()

    def clear(self) -> None:
        with self._lock:
            self._size = 0


class StreamingBuffer:
    """Accumulates audio and hands out fixed-length, overlapping chunks.

    Each chunk after the first re-includes the last ``overlap_samples`` of the
    previous chunk, so a word cut at a boundary appears whole in at least one
    chunk. Extraction is single-consumer: calls to ``extract_chunk`` and
    ``get_remaining`` must come from one thread.
    """

    def __init__(self, config: StreamingConfig | None = None):
        self.config = config or StreamingConfig()
        self._samples = SampleSink(initial_capacity=self.config.chunk_samples)
        self.processed_samples = 0
        self._text_lock = threading.Lock()
        self._accumulated_text = ""

    def buffer_handle(self) -> SampleSink:
        """Sink to hand to the capture collaborator."""
        return self._samples

    def append(self, samples) -> None:
        self._samples.append(samples)

    @property
    def chunk_samples(self) -> int:
        return self.config.chunk_samples

    @property
    def overlap_samples(self) -> int:
        return self.config.overlap_samples

    def _window_start(self) -> int:
        """Start of the next window; the cursor already sits at the overlap start."""
        return self.processed_samples

    def has_chunk_available(self) -> bool:
        return len(self._samples) - self.processed_samples >= self.chunk_samples

    def extract_chunk(self) -> np.ndarray | None:
        """Next chunk for transcription, or None if not enough audio yet."""
        start = self._window_start()
        end = start + self.chunk_samples

        chunk = self._samples.slice(start, end)
        if len(chunk) < self.chunk_samples:
            return None

        self.processed_samples = max(0, end - self.overlap_samples)
        logger.debug(
            "Extracted chunk [%d, %d), processed_samples=%d",
            start,
            end,
            self.processed_samples,
        )
        return chunk

    def get_remaining(self) -> np.ndarray:
        """Tail not yet consumed, including the trailing overlap region."""
        return self._samples.slice(self._window_start())

    def get_all_audio(self) -> np.ndarray:
        return self._samples.slice(0)

    def clear(self) -> None:
        self._samples.clear()
        self.processed_samples = 0
        with self._text_lock:
            self._accumulated_text = ""

    def append_text(self, text: str) -> None:
        """Append a chunk transcript, single-space separated and trimmed."""
        fragment = (text or "").strip()
        if not fragment:
            return
        with self._text_lock:
            if self._accumulated_text:
                self._accumulated_text += " "
            self._accumulated_text += fragment

    def get_accumulated_text(self) -> str:
        with self._text_lock:
            return self._accumulated_text

    def buffer_len(self) -> int:
        return len(self._samples)

    def duration_secs(self) -> float:
        return self.buffer_len() / float(self.config.sample_rate)
