"""Short-time Fourier transform on numpy arrays.

Two interchangeable paths compute the same magnitudes:

- ``method="direct"``: explicit DFT sum over the first ``F//2 + 1`` bins (O(F^2) per frame)
- ``method="fft"``: ``scipy.fft.rfft`` (O(F log F) per frame), the default

The direct path is the reference the fast path is tested against.
"""
from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import List

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view
from scipy import fft as sp_fft
from scipy.signal import get_window

from utils.errors import PreconditionError

STFT_METHODS = ("fft", "direct")


@lru_cache(maxsize=16)
def _hann(size: int) -> np.ndarray:
    # symmetric Hann: 0.5 * (1 - cos(2*pi*i / (F - 1)))
    w = get_window("hann", size, fftbins=False).astype(np.float64)
    w.setflags(write=False)
    return w


def hann_window(size: int) -> np.ndarray:
    """Symmetric Hann window of ``size`` samples (a fresh, writable copy)."""
    if size <= 0:
        raise PreconditionError(f"Window size must be positive, got {size}")
    return _hann(size).copy()


@lru_cache(maxsize=8)
def _dft_basis(size: int):
    num_bins = size // 2 + 1
    k = np.arange(num_bins, dtype=np.float64)[:, None]
    n = np.arange(size, dtype=np.float64)[None, :]
    angle = 2.0 * np.pi * k * n / size
    cos_b, sin_b = np.cos(angle), np.sin(angle)
    cos_b.setflags(write=False)
    sin_b.setflags(write=False)
    return cos_b, sin_b


def dft_magnitude(frames: np.ndarray) -> np.ndarray:
    """
    Direct DFT magnitude of already-windowed frames.

    Args:
        frames: ``[F]`` or ``[num_frames, F]`` real samples.

    Returns:
        ``[..., F//2 + 1]`` magnitudes ``sqrt(re^2 + im^2)``.
    """
    x = np.asarray(frames, dtype=np.float64)
    cos_b, sin_b = _dft_basis(x.shape[-1])
    real = x @ cos_b.T
    imag = -(x @ sin_b.T)
    return np.sqrt(real ** 2 + imag ** 2)


def fft_magnitude(frames: np.ndarray) -> np.ndarray:
    """Same contract as :func:`dft_magnitude`, computed with a real FFT."""
    x = np.asarray(frames, dtype=np.float64)
    return np.abs(sp_fft.rfft(x, axis=-1))


def frame_signal(samples: np.ndarray, frame_size: int, hop_length: int) -> np.ndarray:
    """Split ``samples`` into ``floor((N - F) / H) + 1`` overlapping frames (a view)."""
    x = np.asarray(samples)
    if x.ndim != 1:
        raise PreconditionError(f"Expected mono 1-D samples, got shape {x.shape}")
    if frame_size <= 0 or hop_length <= 0:
        raise PreconditionError(f"frame_size and hop_length must be positive ({frame_size}, {hop_length})")
    if len(x) < frame_size:
        raise PreconditionError(
            f"Audio has {len(x)} samples, fewer than one frame of {frame_size}; pad it first"
        )
    return sliding_window_view(x, frame_size)[::hop_length]


def stft_magnitude(
    samples: np.ndarray,
    fft_size: int,
    hop_length: int,
    method: str = "fft",
) -> np.ndarray:
    """
    Hann-windowed STFT magnitudes.

    Returns:
        float32 array ``[num_frames, fft_size // 2 + 1]`` in time order.

    Raises:
        PreconditionError: if ``len(samples) < fft_size`` or ``method`` is unknown.
    """
    if method not in STFT_METHODS:
        raise PreconditionError(f"Unknown STFT method {method!r}, expected one of {STFT_METHODS}")
    frames = frame_signal(samples, fft_size, hop_length).astype(np.float64) * _hann(fft_size)
    mags = dft_magnitude(frames) if method == "direct" else fft_magnitude(frames)
    return mags.astype(np.float32)


@dataclass
class LiveSpectrogram:
    frequencies: List[float]   # Hz, one per bin
    times: List[float]         # seconds, start of each frame
    magnitudes: List[List[float]]  # [num_frames][num_bins]


def compute_live_spectrogram(
    samples: np.ndarray,
    sample_rate: int,
    window_size: int = 2048,
    hop_size: int = 512,
) -> LiveSpectrogram:
    """Raw per-bin STFT magnitudes with frequency and time axes, for display.

    No mel projection and no normalisation. Input shorter than one window is
    zero-filled to a single frame instead of being rejected.
    """
    if sample_rate <= 0:
        raise PreconditionError(f"sample_rate must be positive, got {sample_rate}")
    x = np.asarray(samples, dtype=np.float32)
    if len(x) < window_size:
        x = np.pad(x, (0, window_size - len(x)))
    mags = stft_magnitude(x, window_size, hop_size)
    num_frames, num_bins = mags.shape
    return LiveSpectrogram(
        frequencies=[k * sample_rate / window_size for k in range(num_bins)],
        times=[i * hop_size / sample_rate for i in range(num_frames)],
        magnitudes=mags.tolist(),
    )
