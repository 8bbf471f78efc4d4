"""Triangular mel filterbank (HTK-style mel scale)."""
from __future__ import annotations

from functools import lru_cache
from typing import Union

import numpy as np

from utils.config import SpectrogramConfig
from utils.errors import PreconditionError

ArrayLike = Union[float, np.ndarray]


def hz_to_mel(hz: ArrayLike) -> ArrayLike:
    return 2595.0 * np.log10(1.0 + np.asarray(hz, dtype=np.float64) / 700.0)


def mel_to_hz(mel: ArrayLike) -> ArrayLike:
    return 700.0 * (10.0 ** (np.asarray(mel, dtype=np.float64) / 2595.0) - 1.0)


@lru_cache(maxsize=32)
def _cached_filterbank(sample_rate: int, fft_size: int, n_mels: int, f_min: float, f_max: float) -> np.ndarray:
    mel_points = np.linspace(hz_to_mel(f_min), hz_to_mel(f_max), n_mels + 2)
    hz_points = mel_to_hz(mel_points)
    bins = np.floor((fft_size + 1) * hz_points / sample_rate).astype(np.int64)

    num_bins = fft_size // 2 + 1
    fb = np.zeros((n_mels, num_bins), dtype=np.float32)
    for m in range(n_mels):
        start, center, end = int(bins[m]), int(bins[m + 1]), int(bins[m + 2])
        # rising edge: 0 at start, 1 at center (exclusive)
        for k in range(max(start, 0), min(center, num_bins)):
            fb[m, k] = (k - start) / (center - start)
        # falling edge: 1 at center, 0 at end (exclusive)
        for k in range(max(center, 0), min(end, num_bins)):
            fb[m, k] = (end - k) / (end - center)
    fb.setflags(write=False)
    return fb


def create_mel_filterbank(
    sample_rate: int,
    fft_size: int,
    n_mels: int,
    f_min: float,
    f_max: float,
) -> np.ndarray:
    """
    Build ``n_mels`` triangular filters over the ``fft_size // 2 + 1`` FFT bins.

    ``n_mels + 2`` points are spaced evenly on the mel scale between ``f_min``
    and ``f_max`` and mapped to bin ``floor((fft_size + 1) * hz / sample_rate)``.
    Filter ``m`` rises from 0 at ``bin[m]`` to 1 at ``bin[m+1]`` and falls back
    to 0 at ``bin[m+2]``. Bins outside the spectrum are ignored.

    The result is cached per argument tuple and is read-only; copy it before
    modifying.

    Returns:
        float32 array ``[n_mels, fft_size // 2 + 1]``.
    """
    if sample_rate <= 0 or fft_size < 2 or n_mels <= 0:
        raise PreconditionError(
            f"Invalid filterbank parameters: sample_rate={sample_rate}, fft_size={fft_size}, n_mels={n_mels}"
        )
    if f_min < 0 or f_max <= f_min:
        raise PreconditionError(f"Invalid frequency range: f_min={f_min}, f_max={f_max}")
    return _cached_filterbank(int(sample_rate), int(fft_size), int(n_mels), float(f_min), float(f_max))


def filterbank_for(config: SpectrogramConfig) -> np.ndarray:
    return create_mel_filterbank(config.sample_rate, config.fft_size, config.n_mels, config.f_min, config.f_max)


def apply_mel_filterbank(magnitude_frames: np.ndarray, filterbank: np.ndarray) -> np.ndarray:
    """Dot each magnitude frame ``[T, bins]`` with each filter ``[M, bins]`` -> ``[T, M]``."""
    mags = np.asarray(magnitude_frames, dtype=np.float32)
    if mags.ndim != 2 or mags.shape[1] != filterbank.shape[1]:
        raise PreconditionError(
            f"Magnitude frames {mags.shape} do not match filterbank {filterbank.shape}"
        )
    return mags @ filterbank.T


def clear_filterbank_cache() -> None:
    _cached_filterbank.cache_clear()
