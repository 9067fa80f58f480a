"""Audio capture into a shared sample sink."""

import logging
import threading
from enum import Enum

import numpy as np
import sounddevice

from dictation_stream.streaming import SampleSink

logger = logging.getLogger(__name__)


class _RecorderState(Enum):
    """Internal recorder state machine."""

    IDLE = "idle"
    RECORDING = "recording"


class AudioRecorder:
    """Manages audio capture via sounddevice.

    The stream callback downmixes each block to mono float32 and appends it to
    the ``SampleSink`` passed to ``start``. The RMS of the latest block is kept
    for level monitoring.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        chunk_size: int = 1024,
        device: int | str | None = None,
    ):
        """Initialize audio recorder.

        Args:
            sample_rate: Sample rate in Hz
            channels: Number of channels
            chunk_size: Frames per callback block
            device: Audio device index or name (None for default)
        """
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        if channels not in (1, 2):
            raise ValueError("channels must be 1 or 2")
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")

        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_size = chunk_size
        self.device = device

        self._state = _RecorderState.IDLE
        self._stream = None
        self._sink: SampleSink | None = None
        self._level_lock = threading.Lock()
        self._level = 0.0

        logger.info(
            "AudioRecorder initialized: %d Hz, %d channels, device=%s",
            sample_rate,
            channels,
            device if device is not None else "default",
        )

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit; ensure cleanup."""
        self.close()
        return False

    @property
    def is_recording(self) -> bool:
        return self._state == _RecorderState.RECORDING

    @property
    def level(self) -> float:
        """RMS of the most recent block (0-1 range)."""
        with self._level_lock:
            return self._level

    def start(self, sink: SampleSink) -> None:
        """Start streaming samples into ``sink``.

        Raises:
            RuntimeError: If already recording or stream cannot be opened
        """
        if self._state != _RecorderState.IDLE:
            raise RuntimeError(
                f"Cannot start recording: recorder in {self._state.value} state"
            )

        resolved_device = self._resolve_device_selection()

        try:
            self._sink = sink
            self._stream = sounddevice.InputStream(
                device=resolved_device,
                samplerate=self.sample_rate,
                channels=self.channels,
                blocksize=self.chunk_size,
                callback=self._callback,
                dtype="float32",
            )
            self._stream.start()
            self._state = _RecorderState.RECORDING
            logger.info(
                "Audio stream started (sample_rate=%d, channels=%d, device=%s)",
                self.sample_rate,
                self.channels,
                resolved_device if resolved_device is not None else "default",
            )
        except Exception as e:
            self._state = _RecorderState.IDLE
            self._stream = None
            self._sink = None
            logger.error("Failed to start audio stream: %s", e)
            raise RuntimeError(f"Failed to start audio stream: {e}") from e

    def stop(self) -> None:
        """Stop the stream. Samples already in the sink are kept.

        Raises:
            RuntimeError: If not recording
        """
        if self._state != _RecorderState.RECORDING:
            raise RuntimeError(
                f"Cannot stop recording: recorder not recording (state={self._state.value})"
            )

        try:
            if self._stream:
                self._stream.stop()
                self._stream.close()
            logger.info("Audio recording stopped")
        except Exception as e:
            logger.error("Failed to stop recording: %s", e)
            raise RuntimeError(f"Failed to stop recording: {e}") from e
        finally:
            self._stream = None
            self._sink = None
            self._state = _RecorderState.IDLE

    def close(self) -> None:
        """Explicitly close stream and cleanup resources."""
        if self._stream:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as e:
                logger.warning("Error closing stream: %s", e)
            finally:
                self._stream = None

        self._sink = None
        self._state = _RecorderState.IDLE

    def _callback(self, indata, frames, time_info, status):
        """Stream callback invoked on audio data arrival.

        Args:
            indata: numpy array of audio data, shape (frames, channels)
            frames: number of frames
            time_info: timing information
            status: stream status flags
        """
        if status:
            logger.warning("Audio stream status: %s", status)

        block = np.asarray(indata, dtype=np.float32)
        if block.ndim > 1:
            block = block.mean(axis=1) if block.shape[1] > 1 else block[:, 0]

        with self._level_lock:
            self._level = self._compute_rms(block)

        sink = self._sink
        if sink is not None:
            sink.append(block)

    @staticmethod
    def _compute_rms(frames: np.ndarray) -> float:
        """RMS energy of a block of samples."""
        if len(frames) == 0:
            return 0.0
        return float(np.sqrt(np.mean(np.square(frames, dtype=np.float64))))

    @staticmethod
    def list_devices() -> dict[int, str]:
        """List available audio capture devices.

        Queries sounddevice and filters for devices with input capability.

        Returns:
            Dict mapping device index to name (e.g., {0: "Default", 2: "USB Audio"})
            Empty dict if no devices found or error occurs
        """
        try:
            devices = sounddevice.query_devices()

            if isinstance(devices, dict):
                devices = [devices]

            result = {}
            for idx, dev_info in enumerate(devices):
                if dev_info.get("max_input_channels", 0) > 0:
                    result[idx] = dev_info.get("name", f"Device {idx}")

            logger.debug("Found %d audio input devices", len(result))
            return result

        except sounddevice.PortAudioError as e:
            logger.warning("PortAudio error querying devices: %s", e)
            return {}
        except Exception as e:
            logger.warning("Error querying audio devices: %s", e)
            return {}

    def _resolve_device_selection(self) -> int | None:
        """Resolve configured device selection to a sounddevice index."""

        if self.device is None or isinstance(self.device, int):
            return self.device

        try:
            device_list = sounddevice.query_devices()
            if isinstance(device_list, dict):
                device_list = [device_list]
        except Exception as e:
            logger.warning(
                "Unable to enumerate audio devices for '%s': %s; using default",
                self.device,
                e,
            )
            return None

        target = self.device.strip().lower()
        partial_matches: list[tuple[int, str]] = []
        available: list[str] = []

        for idx, dev_info in enumerate(device_list):
            if dev_info.get("max_input_channels", 0) <= 0:
                continue

            name = dev_info.get("name", f"Device {idx}")
            normalized = name.strip().lower()
            available.append(f"[{idx}] {name}")

            if normalized == target:
                logger.debug(
                    "Resolved audio device '%s' to index %d (exact match)",
                    self.device,
                    idx,
                )
                return idx

            if target in normalized:
                partial_matches.append((idx, name))

        if partial_matches:
            idx, name = partial_matches[0]
            logger.debug(
                "Resolved audio device '%s' to index %d via partial match (%s)",
                self.device,
                idx,
                name,
            )
            return idx

        logger.warning(
            "Audio device '%s' not found. Using default input. Available devices: %s",
            self.device,
            "; ".join(available) if available else "none",
        )
        return None
