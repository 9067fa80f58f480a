"""Encoder run and greedy transducer decoding over guarded inference sessions."""

import logging
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any, Protocol

import numpy as np

from dictation_stream.engine import InferenceError

logger = logging.getLogger(__name__)


class InferenceSession(Protocol):
    """The subset of ``onnxruntime.InferenceSession`` the decoder relies on."""

    def get_inputs(self) -> list[Any]: ...

    def run(self, output_names: list[str] | None, input_feed: Mapping[str, np.ndarray]) -> list: ...


class GuardedSession:
    """An inference session usable by one caller at a time.

    Runtime sessions are stateful and not reentrant, so every inference goes
    through ``acquire()`` (or ``run``), which holds this session's own mutex for
    exactly one call.
    """

    def __init__(self, session: InferenceSession, label: str):
        self._session = session
        self._lock = threading.Lock()
        self.label = label
        self.input_names = [inp.name for inp in session.get_inputs()]

    @contextmanager
    def acquire(self) -> Iterator[InferenceSession]:
        with self._lock:
            yield self._session

    def run(self, *inputs: np.ndarray) -> list[np.ndarray]:
        """Run one inference, binding ``inputs`` to the session inputs in order.

        Raises:
            InferenceError: On input count mismatch or any runtime failure
        """
        if len(inputs) != len(self.input_names):
            raise InferenceError(
                f"{self.label} expects {len(self.input_names)} inputs, got {len(inputs)}"
            )
        feed = dict(zip(self.input_names, inputs))
        with self.acquire() as session:
            try:
                outputs = session.run(None, feed)
            except Exception as e:
                raise InferenceError(f"{self.label} error: {e}") from e
        if not outputs:
            raise InferenceError(f"{self.label} returned no outputs")
        return outputs


class NeuralDecoder:
    """Runs the encoder once, then decodes tokens greedily one timestep at a time.

    ``max_symbols_per_step=1`` makes exactly one decoder+joiner call per encoder
    timestep, emitting at most one token per frame. Higher values keep decoding
    the same timestep until a blank is produced or the limit is reached.
    """

    def __init__(
        self,
        encoder: GuardedSession,
        decoder_joint: GuardedSession,
        blank_id: int,
        n_mels: int = 80,
        max_symbols_per_step: int = 1,
    ):
        if max_symbols_per_step < 1:
            raise ValueError("max_symbols_per_step must be >= 1")
        self.encoder = encoder
        self.decoder_joint = decoder_joint
        self.blank_id = blank_id
        self.n_mels = n_mels
        self.max_symbols_per_step = max_symbols_per_step

    def encode(self, features: np.ndarray) -> np.ndarray:
        """Run the encoder over ``[frames, n_mels]`` features.

        Returns:
            Encoder output of shape ``[1, time_steps, encoder_dim]``

        Raises:
            InferenceError: On shape mismatch or runtime failure
        """
        features = np.asarray(features, dtype=np.float32)
        if features.ndim != 2 or features.shape[1] != self.n_mels:
            raise InferenceError(
                f"Features must have shape [frames, {self.n_mels}], got {features.shape}"
            )

        tensor = np.ascontiguousarray(features[np.newaxis, :, :])
        outputs = self.encoder.run(tensor)
        encoder_out = np.asarray(outputs[0], dtype=np.float32)

        if encoder_out.ndim != 3 or encoder_out.shape[0] != 1:
            raise InferenceError(
                f"Encoder output must have shape [1, time, dim], got {encoder_out.shape}"
            )
        logger.debug("Encoder output shape: %s", encoder_out.shape)
        return encoder_out

    def _joint_argmax(self, frame: np.ndarray, last_token: int) -> int:
        token_tensor = np.array([[last_token]], dtype=np.int64)
        outputs = self.decoder_joint.run(frame, token_tensor)
        logits = np.asarray(outputs[0])
        if logits.size == 0:
            raise InferenceError("Decoder+joiner returned empty logits")
        # np.argmax returns the first index among equal maxima
        return int(np.argmax(logits.reshape(-1)))

    def greedy_decode(self, encoder_out: np.ndarray) -> list[int]:
        """Greedy token search over the encoder output.

        Raises:
            InferenceError: On shape mismatch or runtime failure
        """
        if encoder_out.ndim != 3 or encoder_out.shape[0] != 1:
            raise InferenceError(
                f"Encoder output must have shape [1, time, dim], got {encoder_out.shape}"
            )
        time_steps, encoder_dim = encoder_out.shape[1], encoder_out.shape[2]

        tokens: list[int] = []
        last_token = self.blank_id

        for t in range(time_steps):
            frame = np.ascontiguousarray(
                encoder_out[0, t, :].reshape(1, 1, encoder_dim), dtype=np.float32
            )
            for _ in range(self.max_symbols_per_step):
                token = self._joint_argmax(frame, last_token)
                if token == self.blank_id:
                    break
                tokens.append(token)
                last_token = token

        logger.debug("Greedy decode: %d timesteps -> %d tokens", time_steps, len(tokens))
        return tokens

    def decode(self, features: np.ndarray) -> list[int]:
        return self.greedy_decode(self.encode(features))
