"""Transducer speech engine (Parakeet TDT ONNX export) run on onnxruntime."""

import logging
import time
from collections.abc import Callable
from enum import Enum
from pathlib import Path

import numpy as np

from dictation_stream._types import TranscriptionResult
from dictation_stream.decoder import GuardedSession, InferenceSession, NeuralDecoder
from dictation_stream.engine import (
    ModelLoadError,
    ModelNotFoundError,
    SpeechEngine,
)
from dictation_stream.features import MelFeatureExtractor
from dictation_stream.vocabulary import Vocabulary

logger = logging.getLogger(__name__)

ENCODER_FILE = "encoder-model.onnx"
DECODER_JOINT_FILE = "decoder_joint-model.onnx"
VOCAB_FILES = ("vocab.txt", "vocab.json")


class TransducerModelSize(Enum):
    """Supported transducer checkpoints."""

    TDT_0_6B_V3 = "parakeet-tdt-0.6b-v3"

    @property
    def model_name(self) -> str:
        return self.value

    @property
    def display_name(self) -> str:
        return {
            TransducerModelSize.TDT_0_6B_V3: "Parakeet TDT 0.6B v3",
        }[self]


def _onnx_session(path: Path) -> InferenceSession:
    import onnxruntime

    return onnxruntime.InferenceSession(str(path), providers=["CPUExecutionProvider"])


class TransducerEngine(SpeechEngine):
    """Mel features -> encoder -> greedy decoder+joiner -> vocabulary.

    The encoder and decoder+joiner sessions are each guarded by their own
    mutex; concurrent ``transcribe`` calls serialize per network.
    """

    required_sample_rate = 16000
    min_duration_secs = 0.1

    def __init__(
        self,
        model_path: str | Path,
        model_size: TransducerModelSize = TransducerModelSize.TDT_0_6B_V3,
        max_symbols_per_step: int = 1,
        session_factory: Callable[[Path], InferenceSession] | None = None,
    ):
        """Load the model directory.

        Args:
            model_path: Directory holding the encoder, decoder+joiner and vocabulary
            model_size: Checkpoint variant, used for display names
            max_symbols_per_step: Decode attempts per encoder timestep
            session_factory: Builds an inference session from a model file
                (defaults to an onnxruntime CPU session)

        Raises:
            ModelNotFoundError: If the directory or a required file is missing
            ModelLoadError: If a network cannot be loaded
            VocabularyError: If the vocabulary cannot be read
        """
        model_path = Path(model_path)
        logger.info("Loading transducer model from %s", model_path)

        if not model_path.is_dir():
            raise ModelNotFoundError(f"Transducer model not found: {model_path}")

        encoder_file = model_path / ENCODER_FILE
        decoder_joint_file = model_path / DECODER_JOINT_FILE
        vocab_file = next(
            (model_path / name for name in VOCAB_FILES if (model_path / name).exists()),
            model_path / VOCAB_FILES[0],
        )

        for label, path in (
            ("Encoder", encoder_file),
            ("Decoder+Joiner", decoder_joint_file),
            ("Vocab", vocab_file),
        ):
            if not path.exists():
                raise ModelNotFoundError(f"{label} file not found: {path}")

        self.model_path = model_path
        self.model_size = model_size
        self.features = MelFeatureExtractor()
        self.vocabulary = Vocabulary.load(vocab_file)

        factory = session_factory or _onnx_session
        encoder = self._load_session(factory, encoder_file, "Encoder")
        decoder_joint = self._load_session(factory, decoder_joint_file, "Decoder+joiner")

        self.decoder = NeuralDecoder(
            encoder,
            decoder_joint,
            blank_id=self.vocabulary.blank_id,
            n_mels=self.features.n_mels,
            max_symbols_per_step=max_symbols_per_step,
        )

        logger.info(
            "Transducer model loaded successfully (%d tokens, max_symbols_per_step=%d)",
            len(self.vocabulary),
            max_symbols_per_step,
        )

    @staticmethod
    def _load_session(
        factory: Callable[[Path], InferenceSession], path: Path, label: str
    ) -> GuardedSession:
        logger.info("Loading %s from %s", label.lower(), path)
        try:
            return GuardedSession(factory(path), label)
        except Exception as e:
            raise ModelLoadError(f"Failed to load {label.lower()} model: {e}") from e

    @property
    def name(self) -> str:
        return "Parakeet"

    @property
    def model_display_name(self) -> str:
        return f"Parakeet {self.model_size.display_name}"

    def transcribe(self, audio: np.ndarray, sample_rate: int) -> TranscriptionResult:
        """Transcribe one 16 kHz window.

        Raises:
            InvalidSampleRateError: If ``sample_rate`` is not 16000
            AudioTooShortError: If the window is shorter than 0.1 s
            InferenceError: If either network fails
        """
        start_time = time.perf_counter()
        duration_seconds = self._check_input(audio, sample_rate)

        features = self.features.compute(audio)
        token_ids = self.decoder.decode(features)
        text = self.vocabulary.decode(token_ids)

        processing_time_ms = int((time.perf_counter() - start_time) * 1000)
        logger.info(
            "Transducer transcription completed in %dms: %d chars",
            processing_time_ms,
            len(text),
        )

        return TranscriptionResult(
            text=text,
            confidence=0.9,
            duration_seconds=duration_seconds,
            processing_time_ms=processing_time_ms,
            detected_language="auto",
            timestamp=int(time.time()),
            model_used=self.model_display_name,
        )
