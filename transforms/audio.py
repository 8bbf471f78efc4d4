"""Waveform -> normalized log-mel spectrogram -> model input tensor.

All array functions take and return numpy ``float32`` arrays and never modify
their input. Spectrograms are stored time-major: ``[num_frames, n_mels]``.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np
import soundfile as sf
import torch

from transforms.mel import apply_mel_filterbank, filterbank_for
from transforms.spectral import stft_magnitude
from utils.config import DEFAULT_CONFIG, SpectrogramConfig
from utils.errors import PreconditionError

AMIN = 1e-10
REF_POWER = 1.0
RAW_PCM_SUFFIXES = {".pcm", ".raw"}


# ------------------------------
# Signal preprocessing
# ------------------------------
def normalize_audio(audio: np.ndarray) -> np.ndarray:
    """Peak-normalize to [-1, 1]. Silence is returned unchanged."""
    x = np.asarray(audio, dtype=np.float32)
    peak = float(np.max(np.abs(x))) if x.size else 0.0
    if peak == 0.0:
        return x
    return (x / peak).astype(np.float32)


def resample_audio(audio: np.ndarray, orig_sr: int, target_sr: int) -> np.ndarray:
    """
    Linear-interpolation resampling.

    With ``ratio = orig_sr / target_sr`` the output has ``floor(len / ratio)``
    samples and sample ``i`` interpolates between ``floor(i * ratio)`` and the
    next source sample (clamped to the last one).
    """
    if orig_sr <= 0 or target_sr <= 0:
        raise PreconditionError(f"Sample rates must be positive ({orig_sr}, {target_sr})")
    x = np.asarray(audio, dtype=np.float32)
    if orig_sr == target_sr:
        return x.copy()
    if x.size == 0:
        return x.copy()

    ratio = orig_sr / target_sr
    new_len = int(np.floor(len(x) / ratio))
    src = np.arange(new_len, dtype=np.float64) * ratio
    lo = np.minimum(np.floor(src).astype(np.int64), len(x) - 1)
    hi = np.minimum(lo + 1, len(x) - 1)
    t = src - lo
    out = x[lo] * (1.0 - t) + x[hi] * t
    return out.astype(np.float32)


def pad_or_trim(audio: np.ndarray, target_length: int) -> np.ndarray:
    """Center-crop or center zero-pad to exactly ``target_length`` samples.

    When the difference is odd the extra sample is trimmed from (or the extra
    zero added to) the end.
    """
    if target_length < 0:
        raise PreconditionError(f"target_length must be >= 0, got {target_length}")
    x = np.asarray(audio, dtype=np.float32)
    n = len(x)
    if n == target_length:
        return x.copy()
    if n > target_length:
        start = (n - target_length) // 2
        return x[start:start + target_length].copy()
    pad = target_length - n
    left = pad // 2
    return np.pad(x, (left, pad - left), mode="constant").astype(np.float32)


def decode_pcm16(buffer: bytes) -> np.ndarray:
    """Little-endian signed 16-bit PCM bytes -> float32 samples in [-1, 1)."""
    usable = len(buffer) - (len(buffer) % 2)
    pcm = np.frombuffer(buffer[:usable], dtype="<i2")
    return (pcm.astype(np.float32) / 32768.0)


def load_audio(path: Union[str, Path], raw_sample_rate: int = DEFAULT_CONFIG.sample_rate) -> Tuple[np.ndarray, int]:
    """
    Load a mono float32 waveform and its sample rate.

    Headerless ``.pcm``/``.raw`` files are decoded as 16-bit little-endian PCM
    recorded at ``raw_sample_rate``; everything else goes through soundfile and
    multi-channel audio is averaged to mono.
    """
    path = Path(path)
    if path.suffix.lower() in RAW_PCM_SUFFIXES:
        return decode_pcm16(path.read_bytes()), int(raw_sample_rate)
    wav, sr = sf.read(str(path), dtype="float32", always_2d=True)
    wav = wav.mean(axis=1) if wav.shape[1] > 1 else wav[:, 0]
    return np.ascontiguousarray(wav, dtype=np.float32), int(sr)


# ------------------------------
# Post-processing
# ------------------------------
def power_to_db(mel_frames: np.ndarray) -> np.ndarray:
    """Square magnitudes to power, floor at 1e-10 and convert to dB (ref 1.0)."""
    power = np.maximum(np.square(np.asarray(mel_frames, dtype=np.float64)), AMIN)
    return (10.0 * np.log10(power / REF_POWER)).astype(np.float32)


def normalize_spectrogram(spectrogram: np.ndarray) -> np.ndarray:
    """Global min-max rescale to [0, 1]; a flat spectrogram maps to all zeros."""
    s = np.asarray(spectrogram, dtype=np.float32)
    if s.size == 0:
        return s.copy()
    lo, hi = float(s.min()), float(s.max())
    rng = (hi - lo) or 1.0
    return np.clip((s - lo) / rng, 0.0, 1.0).astype(np.float32)


def to_tensor(spectrogram: np.ndarray) -> torch.Tensor:
    """
    Pack a time-major spectrogram ``[T, M]`` into the model input ``[1, 1, M, T]``.

    ``packed[0, 0, f, t] == spectrogram[t, f]``. Training and inference must both
    go through this function so the layout always matches.
    """
    s = np.asarray(spectrogram, dtype=np.float32)
    if s.ndim != 2 or s.shape[0] == 0 or s.shape[1] == 0:
        raise PreconditionError(f"Expected a non-empty [frames, mels] spectrogram, got shape {s.shape}")
    return torch.from_numpy(np.ascontiguousarray(s.T)).unsqueeze(0).unsqueeze(0)


# ------------------------------
# Full pipeline
# ------------------------------
def spectrogram_dimensions(config: SpectrogramConfig = DEFAULT_CONFIG) -> Tuple[int, int]:
    """(height, width) = (n_mels, frame count) for a clip of ``config.target_duration``."""
    return config.dimensions()


class MelSpectrogramTransform:
    """Reusable waveform -> normalized log-mel transform bound to one config.

    The mel filterbank is built once per config (and shared through the
    filterbank cache), so constructing many transforms is cheap.
    """

    def __init__(self, config: SpectrogramConfig = DEFAULT_CONFIG, stft_method: str = "fft"):
        self.config = config.validate()
        self.stft_method = stft_method
        self.filterbank = filterbank_for(config)

    def __call__(self, audio: np.ndarray) -> np.ndarray:
        cfg = self.config
        x = normalize_audio(audio)
        x = pad_or_trim(x, cfg.target_samples)
        mags = stft_magnitude(x, cfg.fft_size, cfg.hop_length, method=self.stft_method)
        mel = apply_mel_filterbank(mags, self.filterbank)
        return normalize_spectrogram(power_to_db(mel))

    def __repr__(self) -> str:
        return f"MelSpectrogramTransform({self.config!r}, stft_method={self.stft_method!r})"


def get_mel_transform(config: SpectrogramConfig = DEFAULT_CONFIG, stft_method: str = "fft") -> MelSpectrogramTransform:
    return MelSpectrogramTransform(config, stft_method=stft_method)


def generate_mel_spectrogram(audio: np.ndarray, config: SpectrogramConfig = DEFAULT_CONFIG) -> np.ndarray:
    """normalize -> pad/trim -> STFT -> mel -> dB -> [0, 1]; returns ``[T, n_mels]``."""
    return get_mel_transform(config)(audio)


def wav_to_logmel(wav: Union[np.ndarray, torch.Tensor], mel_transform: MelSpectrogramTransform) -> torch.Tensor:
    """Mono waveform (numpy ``[T]`` or tensor ``[1, T]``) -> tensor ``[1, n_mels, frames]``."""
    if isinstance(wav, torch.Tensor):
        wav = wav.detach().cpu().numpy()
    x = np.asarray(wav, dtype=np.float32).reshape(-1)
    return to_tensor(mel_transform(x)).squeeze(0)


def preprocess_audio_buffer(
    buffer: bytes,
    orig_sr: int = 44100,
    config: SpectrogramConfig = DEFAULT_CONFIG,
    mel_transform: Optional[MelSpectrogramTransform] = None,
) -> torch.Tensor:
    """Raw 16-bit PCM bytes -> model input tensor ``[1, 1, n_mels, frames]``."""
    mel_transform = mel_transform or get_mel_transform(config)
    audio = resample_audio(decode_pcm16(buffer), orig_sr, config.sample_rate)
    return to_tensor(mel_transform(audio))
