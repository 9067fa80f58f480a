"""Log-mel feature extraction with a radix-2 FFT.

Produces the ``[frames, n_mels]`` matrix the transducer encoder consumes:
Hann-windowed frames, magnitude spectrum, triangular mel filterbank, natural
log, then a single z-score over the whole window.
"""

import logging
import math
from dataclasses import dataclass
from functools import lru_cache

import numpy as np

logger = logging.getLogger(__name__)

LOG_FLOOR = 1e-10
STD_FLOOR = 1e-5


def fft(buf: np.ndarray) -> np.ndarray:
    """In-place radix-2 Cooley-Tukey FFT over a complex buffer.

    Args:
        buf: 1-D complex array whose length is a power of two

    Returns:
        The same array, transformed

    Raises:
        ValueError: If the length is not a power of two
    """
    n = len(buf)
    if n <= 1:
        return buf
    if n & (n - 1):
        raise ValueError(f"FFT length must be a power of two, got {n}")

    # Bit-reversal permutation
    j = 0
    for i in range(1, n):
        bit = n >> 1
        while j & bit:
            j ^= bit
            bit >>= 1
        j ^= bit
        if i < j:
            buf[i], buf[j] = buf[j], buf[i]

    # Butterfly passes; each k is applied to every block of the pass at once
    span = 2
    while span <= n:
        half = span // 2
        angle = -2.0 * math.pi / span
        wn = complex(math.cos(angle), math.sin(angle))
        w = complex(1.0, 0.0)
        for k in range(half):
            top = buf[k::span].copy()
            bottom = buf[k + half :: span] * w
            buf[k::span] = top + bottom
            buf[k + half :: span] = top - bottom
            w *= wn
        span <<= 1

    return buf


def hann_window(n: int) -> np.ndarray:
    """Symmetric Hann window of length ``n``."""
    if n == 1:
        return np.ones(1, dtype=np.float64)
    i = np.arange(n, dtype=np.float64)
    return 0.5 * (1.0 - np.cos(2.0 * math.pi * i / (n - 1)))


def hz_to_mel(hz: float) -> float:
    return 2595.0 * math.log10(1.0 + hz / 700.0)


def mel_to_hz(mel: float) -> float:
    return 700.0 * (10.0 ** (mel / 2595.0) - 1.0)


def mel_bin_points(
    n_fft: int, sample_rate: int, n_mels: int, fmin: float, fmax: float
) -> list[int]:
    """FFT bin index of each of the ``n_mels + 2`` filter edge points."""
    mel_min = hz_to_mel(fmin)
    mel_max = hz_to_mel(fmax)
    points = []
    for i in range(n_mels + 2):
        mel = mel_min + (mel_max - mel_min) * i / (n_mels + 1)
        hz = mel_to_hz(mel)
        points.append(int(math.floor((n_fft + 1) * hz / sample_rate)))
    return points


@lru_cache(maxsize=8)
def mel_filterbank(
    n_fft: int, sample_rate: int, n_mels: int, fmin: float, fmax: float
) -> np.ndarray:
    """Triangular mel filterbank of shape ``[n_mels, n_fft // 2 + 1]``.

    Filter ``m`` rises linearly from 0 at bin ``points[m]`` to 1 at
    ``points[m + 1]`` and falls back to 0 at ``points[m + 2]``. The returned
    array is cached and read-only.
    """
    n_freqs = n_fft // 2 + 1
    filterbank = np.zeros((n_mels, n_freqs), dtype=np.float64)
    points = mel_bin_points(n_fft, sample_rate, n_mels, fmin, fmax)

    for m in range(n_mels):
        start, center, end = points[m], points[m + 1], points[m + 2]

        if center > start:
            for k in range(start, min(center, n_freqs)):
                filterbank[m, k] = (k - start) / (center - start)

        if end > center:
            for k in range(center, min(end, n_freqs)):
                filterbank[m, k] = (end - k) / (end - center)

    filterbank.setflags(write=False)
    return filterbank


def frame_count(num_samples: int, n_fft: int, hop_length: int) -> int:
    if num_samples > n_fft:
        return max(1, (num_samples - n_fft) // hop_length + 1)
    return 1


@dataclass(frozen=True)
class MelFeatureExtractor:
    """Normalized log-mel spectrogram extractor."""

    sample_rate: int = 16000
    n_fft: int = 512
    hop_length: int = 160
    n_mels: int = 80
    fmin: float = 0.0
    fmax: float = 8000.0

    def __post_init__(self):
        if self.n_fft <= 0 or self.n_fft & (self.n_fft - 1):
            raise ValueError(f"n_fft must be a power of two, got {self.n_fft}")
        if self.hop_length <= 0:
            raise ValueError("hop_length must be positive")

    @property
    def filterbank(self) -> np.ndarray:
        return mel_filterbank(self.n_fft, self.sample_rate, self.n_mels, self.fmin, self.fmax)

    def compute(self, audio: np.ndarray) -> np.ndarray:
        """Compute normalized log-mel features.

        Args:
            audio: Mono samples at ``sample_rate``

        Returns:
            float32 array of shape ``[frames, n_mels]``
        """
        audio = np.asarray(audio, dtype=np.float64).reshape(-1)
        n_fft = self.n_fft
        num_frames = frame_count(len(audio), n_fft, self.hop_length)

        window = hann_window(n_fft)
        filters = self.filterbank
        mel_spec = np.empty((num_frames, self.n_mels), dtype=np.float64)
        fft_buf = np.zeros(n_fft, dtype=np.complex128)

        for frame_idx in range(num_frames):
            start = frame_idx * self.hop_length
            frame = audio[start : start + n_fft]

            fft_buf[:] = 0.0
            fft_buf[: len(frame)] = frame * window[: len(frame)]
            fft(fft_buf)

            magnitude = np.abs(fft_buf[: n_fft // 2 + 1])
            energy = filters @ magnitude
            mel_spec[frame_idx] = np.log(np.maximum(energy, LOG_FLOOR))

        mean = mel_spec.mean()
        std = max(float(mel_spec.std()), STD_FLOOR)
        features = (mel_spec - mean) / std

        logger.debug(
            "Computed features: samples=%d, frames=%d, mean=%.4f, std=%.4f",
            len(audio),
            num_frames,
            mean,
            std,
        )
        return features.astype(np.float32)
