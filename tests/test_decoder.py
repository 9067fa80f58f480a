"""Tests for guarded sessions and greedy transducer decoding."""

import threading
import time
from types import SimpleNamespace

import numpy as np
import pytest

from dictation_stream.decoder import GuardedSession, NeuralDecoder
from dictation_stream.engine import InferenceError


class FakeSession:
    """Minimal stand-in for an onnxruntime session."""

    def __init__(self, input_names, fn):
        self._inputs = [SimpleNamespace(name=n) for n in input_names]
        self._fn = fn
        self.feeds = []

    def get_inputs(self):
        return self._inputs

    def run(self, output_names, feed):
        self.feeds.append(feed)
        return self._fn(feed)


def _encoder(time_steps=3, dim=4):
    return FakeSession(
        ["audio_signal"],
        lambda feed: [np.ones((1, time_steps, dim), dtype=np.float32)],
    )


def _decoder_joint(script, vocab_size=5):
    """Decoder+joiner emitting the scripted token ids in call order."""
    calls = iter(script)

    def fn(feed):
        logits = np.zeros((1, 1, 1, vocab_size), dtype=np.float32)
        logits[..., next(calls)] = 1.0
        return [logits]

    return FakeSession(["encoder_outputs", "targets"], fn)


class TestGuardedSession:
    """Tests for GuardedSession."""

    def test_binds_inputs_in_order(self):
        """Test positional inputs are fed by session input name."""
        session = FakeSession(["a", "b"], lambda feed: [feed["a"] + feed["b"]])
        guarded = GuardedSession(session, "Test")

        out = guarded.run(np.array([1]), np.array([2]))

        assert guarded.input_names == ["a", "b"]
        assert out[0][0] == 3

    def test_input_count_mismatch(self):
        """Test wrong input arity raises InferenceError."""
        guarded = GuardedSession(FakeSession(["a", "b"], lambda feed: [0]), "Test")
        with pytest.raises(InferenceError, match="expects 2 inputs, got 1"):
            guarded.run(np.array([1]))

    def test_runtime_error_wrapped(self):
        """Test session failures surface as InferenceError."""

        def boom(feed):
            raise RuntimeError("kaboom")

        guarded = GuardedSession(FakeSession(["a"], boom), "Encoder")
        with pytest.raises(InferenceError, match="Encoder error: kaboom"):
            guarded.run(np.array([1]))

    def test_empty_outputs(self):
        """Test empty output lists are rejected."""
        guarded = GuardedSession(FakeSession(["a"], lambda feed: []), "Encoder")
        with pytest.raises(InferenceError, match="returned no outputs"):
            guarded.run(np.array([1]))

    def test_single_user_at_a_time(self):
        """Test concurrent runs never overlap inside the session."""
        active = []
        overlaps = []

        def slow(feed):
            active.append(1)
            if len(active) > 1:
                overlaps.append(True)
            time.sleep(0.01)
            active.pop()
            return [np.zeros(1)]

        guarded = GuardedSession(FakeSession(["a"], slow), "Encoder")
        threads = [
            threading.Thread(target=guarded.run, args=(np.zeros(1),)) for _ in range(5)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == []


class TestNeuralDecoderEncode:
    """Tests for NeuralDecoder.encode."""

    def test_feeds_batched_features(self):
        """Test features are fed as [1, frames, n_mels]."""
        encoder = _encoder()
        decoder = NeuralDecoder(
            GuardedSession(encoder, "Encoder"),
            GuardedSession(_decoder_joint([]), "Decoder+joiner"),
            blank_id=0,
        )

        out = decoder.encode(np.zeros((10, 80), dtype=np.float32))

        assert encoder.feeds[0]["audio_signal"].shape == (1, 10, 80)
        assert out.shape == (1, 3, 4)

    def test_rejects_bad_feature_shape(self):
        """Test feature matrices with the wrong width are rejected."""
        decoder = NeuralDecoder(
            GuardedSession(_encoder(), "Encoder"),
            GuardedSession(_decoder_joint([]), "Decoder+joiner"),
            blank_id=0,
        )
        with pytest.raises(InferenceError, match="Features must have shape"):
            decoder.encode(np.zeros((10, 64), dtype=np.float32))

    def test_rejects_bad_encoder_output(self):
        """Test encoder outputs that are not [1, T, D] are rejected."""
        encoder = FakeSession(["x"], lambda feed: [np.zeros((3, 4), dtype=np.float32)])
        decoder = NeuralDecoder(
            GuardedSession(encoder, "Encoder"),
            GuardedSession(_decoder_joint([]), "Decoder+joiner"),
            blank_id=0,
        )
        with pytest.raises(InferenceError, match="Encoder output must have shape"):
            decoder.encode(np.zeros((10, 80), dtype=np.float32))


class TestNeuralDecoderGreedy:
    """Tests for greedy decoding."""

    def test_one_call_per_timestep(self):
        """Test the default emits at most one token per encoder frame."""
        joint = _decoder_joint([2, 0, 3])
        decoder = NeuralDecoder(
            GuardedSession(_encoder(), "Encoder"),
            GuardedSession(joint, "Decoder+joiner"),
            blank_id=0,
        )

        tokens = decoder.decode(np.zeros((10, 80), dtype=np.float32))

        assert tokens == [2, 3]
        assert len(joint.feeds) == 3

    def test_last_token_fed_back(self):
        """Test the previous non-blank token is the next target."""
        joint = _decoder_joint([2, 0, 3])
        decoder = NeuralDecoder(
            GuardedSession(_encoder(), "Encoder"),
            GuardedSession(joint, "Decoder+joiner"),
            blank_id=0,
        )

        decoder.decode(np.zeros((10, 80), dtype=np.float32))

        targets = [int(feed["targets"][0, 0]) for feed in joint.feeds]
        assert targets == [0, 2, 2]
        assert joint.feeds[0]["targets"].dtype == np.int64
        assert joint.feeds[0]["encoder_outputs"].shape == (1, 1, 4)

    def test_multiple_symbols_per_step(self):
        """Test higher limits keep decoding a frame until blank."""
        joint = _decoder_joint([1, 2, 0, 0, 3, 0])
        decoder = NeuralDecoder(
            GuardedSession(_encoder(time_steps=3), "Encoder"),
            GuardedSession(joint, "Decoder+joiner"),
            blank_id=0,
            max_symbols_per_step=3,
        )

        tokens = decoder.decode(np.zeros((10, 80), dtype=np.float32))

        assert tokens == [1, 2, 3]
        assert len(joint.feeds) == 6

    def test_ties_pick_lowest_index(self):
        """Test equal logits resolve to the first index."""
        joint = FakeSession(
            ["encoder_outputs", "targets"],
            lambda feed: [np.array([[0.0, 5.0, 5.0, 1.0]], dtype=np.float32)],
        )
        decoder = NeuralDecoder(
            GuardedSession(_encoder(time_steps=1), "Encoder"),
            GuardedSession(joint, "Decoder+joiner"),
            blank_id=0,
        )
        assert decoder.decode(np.zeros((5, 80), dtype=np.float32)) == [1]

    def test_invalid_max_symbols(self):
        """Test max_symbols_per_step below 1 is rejected."""
        with pytest.raises(ValueError, match="max_symbols_per_step"):
            NeuralDecoder(
                GuardedSession(_encoder(), "Encoder"),
                GuardedSession(_decoder_joint([]), "Decoder+joiner"),
                blank_id=0,
                max_symbols_per_step=0,
            )
