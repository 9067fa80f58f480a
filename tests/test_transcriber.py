"""Tests for the Whisper engine."""

import math
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from dictation_stream.engine import (
    AudioTooShortError,
    EngineInitError,
    InferenceError,
    InvalidSampleRateError,
)
from dictation_stream.transcriber import WhisperEngine


def _segment(text, avg_logprob=-0.1):
    seg = MagicMock()
    seg.text = text
    seg.avg_logprob = avg_logprob
    return seg


@pytest.fixture
def mock_model():
    with patch("faster_whisper.WhisperModel") as mock_model_class:
        instance = MagicMock()
        mock_model_class.return_value = instance
        info = MagicMock()
        info.language = "en"
        instance.transcribe.return_value = (iter([_segment(" hello world ")]), info)
        yield mock_model_class, instance


class TestWhisperEngineInit:
    """Tests for WhisperEngine initialization."""

    def test_loads_model_eagerly(self, mock_model):
        """Test the model is constructed with the configured options."""
        mock_model_class, _ = mock_model
        engine = WhisperEngine(
            model_name="small",
            device="cuda",
            compute_type="float16",
            model_directory="/models",
            beam_size=3,
        )
        mock_model_class.assert_called_once_with(
            "small", device="cuda", compute_type="float16", download_root="/models"
        )
        assert engine.name == "Whisper"
        assert engine.model_display_name == "Whisper Small"

    def test_load_failure(self):
        """Test model load errors raise EngineInitError."""
        with patch("faster_whisper.WhisperModel", side_effect=RuntimeError("no cuda")):
            with pytest.raises(EngineInitError, match="Failed to load Whisper model 'base'"):
                WhisperEngine()


class TestWhisperEngineTranscribe:
    """Tests for WhisperEngine.transcribe."""

    def test_transcribe(self, mock_model):
        """Test segments are joined, normalized and scored."""
        _, instance = mock_model
        engine = WhisperEngine(beam_size=2, language="en")

        result = engine.transcribe(np.zeros(16000, dtype=np.float32), 16000)

        assert result.text == "Hello world"
        assert result.confidence == pytest.approx(math.exp(-0.1))
        assert result.detected_language == "en"
        assert result.duration_seconds == pytest.approx(1.0)
        assert result.model_used == "Whisper Base"
        kwargs = instance.transcribe.call_args.kwargs
        assert kwargs["beam_size"] == 2
        assert kwargs["language"] == "en"
        assert kwargs["condition_on_previous_text"] is False

    def test_no_segments(self, mock_model):
        """Test silence produces empty text with zero confidence."""
        _, instance = mock_model
        instance.transcribe.return_value = (iter([]), MagicMock(language="en"))
        engine = WhisperEngine()

        result = engine.transcribe(np.zeros(16000, dtype=np.float32), 16000)

        assert result.text == ""
        assert result.confidence == 0.0

    def test_wrong_sample_rate(self, mock_model):
        """Test non-16 kHz input is rejected."""
        _, instance = mock_model
        engine = WhisperEngine()
        with pytest.raises(InvalidSampleRateError):
            engine.transcribe(np.zeros(48000, dtype=np.float32), 48000)
        instance.transcribe.assert_not_called()

    def test_too_short(self, mock_model):
        """Test windows under half a second are rejected."""
        _, instance = mock_model
        engine = WhisperEngine()
        with pytest.raises(AudioTooShortError, match="minimum 0.50 seconds"):
            engine.transcribe(np.zeros(4000, dtype=np.float32), 16000)
        instance.transcribe.assert_not_called()

    def test_model_failure(self, mock_model):
        """Test model errors raise InferenceError."""
        _, instance = mock_model
        instance.transcribe.side_effect = RuntimeError("decode failed")
        engine = WhisperEngine()
        with pytest.raises(InferenceError, match="decode failed"):
            engine.transcribe(np.zeros(16000, dtype=np.float32), 16000)


class TestTextNormalization:
    """Tests for text normalization."""

    @pytest.fixture
    def engine(self, mock_model):
        return WhisperEngine()

    def test_collapses_whitespace(self, engine):
        """Test repeated whitespace collapses to one space."""
        assert engine._normalize_text("hello   \n world") == "Hello world"

    def test_collapses_ellipsis(self, engine):
        """Test runs of dots become one period."""
        assert engine._normalize_text("wait... what") == "Wait. what"

    def test_removes_space_before_punctuation(self, engine):
        """Test spaces before punctuation are dropped."""
        assert engine._normalize_text("hello , world !") == "Hello, world!"

    def test_empty(self, engine):
        """Test empty text stays empty."""
        assert engine._normalize_text("   ") == ""
