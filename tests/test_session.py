"""Tests for streaming session and background tasks."""

import threading
import time

import numpy as np
import pytest

from dictation_stream._types import TranscriptionResult
from dictation_stream.engine import EngineSlot, InferenceError, SpeechEngine
from dictation_stream.session import (
    BackgroundTask,
    CancellationToken,
    SessionState,
    StreamingSession,
    start_level_monitor,
)
from dictation_stream.streaming import StreamingConfig


class FakeRecorder:
    """Recorder stand-in that exposes the sink it was started with."""

    def __init__(self):
        self.sink = None
        self.level = 0.0
        self.started = 0
        self.stopped = 0

    def start(self, sink):
        self.sink = sink
        self.started += 1

    def stop(self):
        self.stopped += 1


class CountingEngine(SpeechEngine):
    """Returns w1, w2, ... and optionally fails on selected calls."""

    def __init__(self, fail_on=()):
        self.calls = 0
        self.fail_on = set(fail_on)
        self.lengths = []

    @property
    def name(self):
        return "Counting"

    @property
    def model_display_name(self):
        return "Counting"

    def transcribe(self, audio, sample_rate):
        duration = self._check_input(audio, sample_rate)
        self.calls += 1
        self.lengths.append(len(audio))
        if self.calls in self.fail_on:
            raise InferenceError(f"call {self.calls} failed")
        return TranscriptionResult(
            text=f"w{self.calls}",
            confidence=1.0,
            duration_seconds=duration,
            processing_time_ms=0,
            detected_language=None,
            timestamp=0,
        )


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return False


CONFIG = StreamingConfig(chunk_duration_secs=0.5, overlap_secs=0.1, sample_rate=16000)


class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_cancel_and_reset(self):
        """Test cancel state transitions."""
        token = CancellationToken()
        assert token.is_cancelled() is False
        token.cancel()
        assert token.is_cancelled() is True
        token.reset()
        assert token.is_cancelled() is False

    def test_wait_returns_early_on_cancel(self):
        """Test wait wakes as soon as the token is cancelled."""
        token = CancellationToken()
        threading.Timer(0.02, token.cancel).start()
        started = time.perf_counter()
        assert token.wait(2.0) is True
        assert time.perf_counter() - started < 1.0

    def test_wait_times_out(self):
        """Test wait returns False when not cancelled."""
        assert CancellationToken().wait(0.01) is False


class TestBackgroundTask:
    """Tests for BackgroundTask."""

    def test_stop_cancels_and_joins(self):
        """Test stop ends the loop and joins the thread."""
        ticks = []

        def loop(token):
            while not token.wait(0.005):
                ticks.append(1)

        task = BackgroundTask(loop, "test-loop").start()
        assert _wait_for(lambda: len(ticks) > 2)
        task.stop()
        assert task.is_running is False
        assert task.token.is_cancelled() is True

    def test_crash_is_logged(self, caplog):
        """Test an exception in the loop is logged rather than lost."""

        def boom(token):
            raise RuntimeError("loop died")

        task = BackgroundTask(boom, "crashy").start()
        task.stop()
        assert "loop died" in caplog.text


class TestStreamingSession:
    """Tests for StreamingSession."""

    def test_streams_chunks_and_flushes_tail(self):
        """Test chunks are transcribed as audio arrives and the tail on stop."""
        recorder = FakeRecorder()
        engine = CountingEngine()
        updates = []
        session = StreamingSession(
            recorder, EngineSlot(engine), CONFIG, on_chunk=updates.append, poll_interval=0.005
        )

        session.start()
        assert session.state == SessionState.STREAMING
        assert recorder.started == 1
        recorder.sink.append(np.zeros(16000, dtype=np.float32))
        assert _wait_for(lambda: session.chunks_transcribed == 2)

        final = session.stop()

        assert final.is_final is True
        assert final.text == "w1 w2 w3"
        assert final.duration_seconds == pytest.approx(1.0)
        assert engine.lengths == [8000, 8000, 3200]
        assert recorder.stopped == 1
        assert session.state == SessionState.STOPPED
        assert [u.text for u in updates] == ["w1", "w2", "w1 w2 w3"]
        assert [u.is_final for u in updates] == [False, False, True]

    def test_chunk_errors_are_skipped(self):
        """Test a failed chunk is logged and the stream continues."""
        recorder = FakeRecorder()
        engine = CountingEngine(fail_on={1})
        session = StreamingSession(recorder, EngineSlot(engine), CONFIG, poll_interval=0.005)

        session.start()
        recorder.sink.append(np.zeros(16000, dtype=np.float32))
        assert _wait_for(lambda: engine.calls == 2)
        final = session.stop()

        assert final.text == "w2 w3"
        assert isinstance(session.last_error, InferenceError)

    def test_short_tail_not_flushed(self):
        """Test a tail no longer than the overlap is not transcribed."""
        recorder = FakeRecorder()
        engine = CountingEngine()
        session = StreamingSession(recorder, EngineSlot(engine), CONFIG, poll_interval=0.005)

        session.start()
        recorder.sink.append(np.zeros(8000, dtype=np.float32))
        assert _wait_for(lambda: session.chunks_transcribed == 1)
        final = session.stop()

        assert final.text == "w1"
        assert engine.calls == 1

    def test_short_utterance_flushed(self):
        """Test audio shorter than one chunk is transcribed on stop."""
        recorder = FakeRecorder()
        engine = CountingEngine()
        session = StreamingSession(recorder, EngineSlot(engine), CONFIG, poll_interval=0.005)

        session.start()
        recorder.sink.append(np.zeros(1600, dtype=np.float32))
        final = session.stop()

        assert final.text == "w1"
        assert engine.lengths == [1600]

    def test_empty_slot_records_error(self):
        """Test an empty engine slot surfaces as the last error."""
        recorder = FakeRecorder()
        session = StreamingSession(recorder, EngineSlot(), CONFIG, poll_interval=0.005)

        session.start()
        recorder.sink.append(np.zeros(4000, dtype=np.float32))
        final = session.stop()

        assert final.text == ""
        assert "No speech engine loaded" in str(session.last_error)

    def test_restart_clears_previous_session(self):
        """Test start resets buffered audio and text."""
        recorder = FakeRecorder()
        session = StreamingSession(
            recorder, EngineSlot(CountingEngine()), CONFIG, poll_interval=0.005
        )
        session.start()
        recorder.sink.append(np.zeros(4000, dtype=np.float32))
        session.stop()

        session.start()
        assert session.buffer.buffer_len() == 0
        assert session.buffer.get_accumulated_text() == ""
        session.stop()

    def test_lifecycle_errors(self):
        """Test stop before start and double start are rejected."""
        session = StreamingSession(FakeRecorder(), EngineSlot(), CONFIG, poll_interval=0.005)
        with pytest.raises(RuntimeError, match="not streaming"):
            session.stop()
        session.start()
        with pytest.raises(RuntimeError, match="already running"):
            session.start()
        session.stop()

    def test_invalid_poll_interval(self):
        """Test non-positive poll intervals are rejected."""
        with pytest.raises(ValueError, match="poll_interval must be positive"):
            StreamingSession(FakeRecorder(), EngineSlot(), CONFIG, poll_interval=0)


class TestLevelMonitor:
    """Tests for start_level_monitor."""

    def test_reports_levels_until_stopped(self):
        """Test the monitor polls the recorder level until stopped."""
        recorder = FakeRecorder()
        recorder.level = 0.25
        levels = []

        task = start_level_monitor(recorder, levels.append, interval=0.005)
        assert _wait_for(lambda: len(levels) >= 3)
        task.stop()
        count = len(levels)
        time.sleep(0.03)

        assert set(levels) == {0.25}
        assert len(levels) == count

    def test_invalid_interval(self):
        """Test non-positive intervals are rejected."""
        with pytest.raises(ValueError, match="interval must be positive"):
            start_level_monitor(FakeRecorder(), lambda level: None, interval=0)
