"""Spectrogram augmentations used on training batches only.

All functions work on time-major ``[frames, mels]`` arrays and return a copy.
"""
from __future__ import annotations

from typing import Optional

import numpy as np

from utils.errors import PreconditionError

AUGMENTATIONS = ("time_mask", "freq_mask", "noise")

TIME_MASK_WIDTH = (5, 25)   # frames, upper bound exclusive
FREQ_MASK_HEIGHT = (3, 18)  # mel bins, upper bound exclusive
MAX_NOISE_LEVEL = 0.02


def _mask_start(rng: np.random.Generator, length: int, width: int) -> int:
    span = length - width
    return int(rng.integers(0, span)) if span > 0 else 0


def time_mask(spectrogram: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    out = np.array(spectrogram, dtype=np.float32, copy=True)
    width = int(rng.integers(*TIME_MASK_WIDTH))
    start = _mask_start(rng, out.shape[0], width)
    out[start:start + width, :] = 0.0
    return out


def freq_mask(spectrogram: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    out = np.array(spectrogram, dtype=np.float32, copy=True)
    height = int(rng.integers(*FREQ_MASK_HEIGHT))
    start = _mask_start(rng, out.shape[1], height)
    out[:, start:start + height] = 0.0
    return out


def add_noise(spectrogram: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    out = np.array(spectrogram, dtype=np.float32, copy=True)
    level = rng.uniform(0.0, MAX_NOISE_LEVEL)
    out += ((rng.random(out.shape) - 0.5) * level).astype(np.float32)
    return out


_DISPATCH = {
    "time_mask": time_mask,
    "freq_mask": freq_mask,
    "noise": add_noise,
}


def apply_augmentation(spectrogram: np.ndarray, kind: str, rng: Optional[np.random.Generator] = None) -> np.ndarray:
    if kind not in _DISPATCH:
        raise PreconditionError(f"Unknown augmentation {kind!r}, expected one of {AUGMENTATIONS}")
    return _DISPATCH[kind](spectrogram, rng if rng is not None else np.random.default_rng())


class SpecAugment:
    """With probability ``p`` apply one augmentation picked uniformly at random."""

    def __init__(self, p: float = 0.5, seed: Optional[int] = None):
        if not 0.0 <= p <= 1.0:
            raise PreconditionError(f"Augmentation probability must be in [0, 1], got {p}")
        self.p = p
        self.rng = np.random.default_rng(seed)

    def __call__(self, spectrogram: np.ndarray) -> np.ndarray:
        if self.rng.random() >= self.p:
            return spectrogram
        kind = AUGMENTATIONS[int(self.rng.integers(len(AUGMENTATIONS)))]
        return apply_augmentation(spectrogram, kind, self.rng)
