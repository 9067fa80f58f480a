"""Streaming session: capture, chunking and per-chunk transcription."""

import logging
import threading
from collections.abc import Callable
from enum import Enum

import numpy as np

from dictation_stream._types import StreamingChunk
from dictation_stream.engine import AudioTooShortError, EngineError, EngineSlot
from dictation_stream.recorder import AudioRecorder
from dictation_stream.streaming import StreamingBuffer, StreamingConfig

logger = logging.getLogger(__name__)


class CancellationToken:
    """Token for stopping a background loop.

    The loop calls ``wait`` between iterations; cancelling wakes it
    immediately instead of waiting for the full interval.
    """

    def __init__(self):
        """Initialize cancellation token in non-cancelled state."""
        self._event = threading.Event()

    def cancel(self) -> None:
        """Mark token as cancelled."""
        self._event.set()

    def is_cancelled(self) -> bool:
        """Check if token is cancelled.

        Returns:
            True if cancelled, False otherwise
        """
        return self._event.is_set()

    def reset(self) -> None:
        """Reset token to non-cancelled state."""
        self._event.clear()

    def wait(self, timeout: float | None = None) -> bool:
        """Sleep up to ``timeout`` seconds; return True if cancelled."""
        return self._event.wait(timeout)


class BackgroundTask:
    """Owned handle for a loop running on its own thread.

    ``target`` receives the task's token and must return once the token is
    cancelled.
    """

    def __init__(self, target: Callable[[CancellationToken], None], name: str):
        self.name = name
        self.token = CancellationToken()
        self._target = target
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def _run(self) -> None:
        try:
            self._target(self.token)
        except Exception as e:
            logger.error("Background task %s crashed: %s", self.name, e, exc_info=True)

    def start(self) -> "BackgroundTask":
        self._thread.start()
        logger.debug("Background task %s started", self.name)
        return self

    @property
    def is_running(self) -> bool:
        return self._thread.is_alive()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Cancel the loop and join its thread."""
        self.token.cancel()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning(
                    "Background task %s did not stop within %.1fs", self.name, timeout
                )
        logger.debug("Background task %s stopped", self.name)


class SessionState(Enum):
    """Streaming session state."""

    IDLE = "idle"
    STREAMING = "streaming"
    STOPPED = "stopped"


class StreamingSession:
    """Runs one dictation from start to stop.

    The recorder writes into the buffer's sample sink; a worker thread pulls
    overlapping chunks, transcribes them through the engine slot and appends
    the text. Failed chunks are logged and skipped.
    """

    def __init__(
        self,
        recorder: AudioRecorder,
        slot: EngineSlot,
        config: StreamingConfig | None = None,
        on_chunk: Callable[[StreamingChunk], None] | None = None,
        poll_interval: float = 0.05,
    ):
        """Initialize streaming session.

        Args:
            recorder: Capture collaborator feeding the buffer
            slot: Engine slot used for every chunk
            config: Chunk and overlap parameters
            on_chunk: Called with each partial result and the final one
            poll_interval: Seconds the worker sleeps when no chunk is ready
        """
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")

        self.recorder = recorder
        self.slot = slot
        self.buffer = StreamingBuffer(config)
        self.on_chunk = on_chunk
        self.poll_interval = poll_interval

        self.state = SessionState.IDLE
        self.last_error: EngineError | None = None
        self.chunks_transcribed = 0
        self._worker: BackgroundTask | None = None

    @property
    def sample_rate(self) -> int:
        return self.buffer.config.sample_rate

    def start(self) -> None:
        """Clear the buffer, start capture and the chunk worker.

        Raises:
            RuntimeError: If already streaming or capture cannot start
        """
        if self.state == SessionState.STREAMING:
            raise RuntimeError("Streaming session already running")

        self.buffer.clear()
        self.last_error = None
        self.chunks_transcribed = 0

        self.recorder.start(self.buffer.buffer_handle())
        self._worker = BackgroundTask(self._worker_loop, "streaming-worker").start()
        self.state = SessionState.STREAMING
        logger.info(
            "Streaming session started (chunk=%.2fs, overlap=%.2fs)",
            self.buffer.config.chunk_duration_secs,
            self.buffer.config.overlap_secs,
        )

    def stop(self) -> StreamingChunk:
        """Stop capture, flush the remaining audio and return the final result.

        Raises:
            RuntimeError: If the session is not streaming
        """
        if self.state != SessionState.STREAMING:
            raise RuntimeError(
                f"Cannot stop session: not streaming (state={self.state.value})"
            )

        if self._worker is not None:
            self._worker.stop()
            self._worker = None

        try:
            self.recorder.stop()
        except RuntimeError as e:
            logger.warning("Error stopping recorder: %s", e)

        remaining = self.buffer.get_remaining()
        # After the first chunk the leading overlap has already been transcribed.
        already_seen = self.buffer.overlap_samples if self.buffer.processed_samples else 0
        if len(remaining) > already_seen:
            self._transcribe_chunk(remaining)
        else:
            logger.debug("Skipping final flush: %d samples remaining", len(remaining))

        self.state = SessionState.STOPPED
        final = StreamingChunk(
            text=self.buffer.get_accumulated_text(),
            is_final=True,
            duration_seconds=self.buffer.duration_secs(),
        )
        logger.info(
            "Streaming session stopped: %d chunks, %.2fs audio, %d chars",
            self.chunks_transcribed,
            final.duration_seconds,
            len(final.text),
        )
        self._emit(final)
        return final

    def _worker_loop(self, token: CancellationToken) -> None:
        while not token.is_cancelled():
            chunk = self.buffer.extract_chunk()
            if chunk is None:
                token.wait(self.poll_interval)
                continue
            self._transcribe_chunk(chunk, emit=True)

    def _transcribe_chunk(self, chunk: np.ndarray, emit: bool = False) -> None:
        try:
            result = self.slot.transcribe(chunk, self.sample_rate)
        except AudioTooShortError as e:
            logger.debug("Skipping short chunk: %s", e)
            return
        except EngineError as e:
            self.last_error = e
            logger.error("Chunk transcription failed: %s", e)
            return

        self.chunks_transcribed += 1
        self.buffer.append_text(result.text)
        logger.debug(
            "Chunk %d transcribed in %dms: %r",
            self.chunks_transcribed,
            result.processing_time_ms,
            result.text,
        )
        if emit:
            self._emit(
                StreamingChunk(
                    text=result.text,
                    is_final=False,
                    duration_seconds=result.duration_seconds,
                )
            )

    def _emit(self, chunk: StreamingChunk) -> None:
        if self.on_chunk is None:
            return
        try:
            self.on_chunk(chunk)
        except Exception as e:
            logger.error("on_chunk callback failed: %s", e, exc_info=True)


def start_level_monitor(
    recorder: AudioRecorder,
    on_level: Callable[[float], None],
    interval: float = 0.1,
) -> BackgroundTask:
    """Poll the recorder's input level every ``interval`` seconds.

    Returns:
        Running task; call ``stop()`` to end it
    """
    if interval <= 0:
        raise ValueError("interval must be positive")

    def _loop(token: CancellationToken) -> None:
        while not token.wait(interval):
            on_level(recorder.level)

    return BackgroundTask(_loop, "level-monitor").start()
