"""
Feature extraction strategies.

A loaded model comes in one of two variants and each has its own extractor:

- ``custom``: :class:`BirdSoundCNN` trained on spectrograms computed outside the
  model by ``transforms.audio`` (:class:`PrecomputedMelExtractor`).
- ``in_graph``: :class:`InGraphBirdModel`, whose first layer (:class:`MelSpecLayer`)
  turns the raw waveform into a spectrogram inside the graph
  (:class:`InGraphFeatureExtractor`).

The two use different scaling conventions and are never mixed.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import torch
import torch.nn as nn

from models.bird_cnn import BirdSoundCNN
from transforms.audio import get_mel_transform, normalize_spectrogram, resample_audio, to_tensor
from transforms.mel import create_mel_filterbank
from utils.config import ModelConfig, SpectrogramConfig
from utils.errors import PreconditionError

VARIANTS = ("custom", "in_graph")


class MelSpecLayer(nn.Module):
    """
    Waveform -> mel spectrogram as a model layer.

    Input ``[B, T]`` raw samples, output ``[B, 1, n_mels, frames]`` with the mel
    axis flipped (highest band first). Each example is min-max scaled to
    [-1, 1] before a Hann-windowed STFT, the magnitudes are projected onto the
    mel filterbank and squared, then compressed by ``p ** (1 / (1 + exp(s)))``
    where ``s`` is the trainable ``magnitude_scaling`` scalar.
    """

    def __init__(
        self,
        sample_rate: int = 48000,
        n_mels: int = 96,
        frame_length: int = 3000,
        frame_step: int = 1500,
        fmin: float = 0.0,
        fmax: float = 15000.0,
        magnitude_scaling: float = 1.23,
    ):
        super().__init__()
        self.sample_rate = sample_rate
        self.n_mels = n_mels
        self.frame_length = frame_length
        self.frame_step = frame_step
        self.fmin = fmin
        self.fmax = fmax
        fb = create_mel_filterbank(sample_rate, frame_length, n_mels, fmin, fmax)
        self.register_buffer("mel_filterbank", torch.from_numpy(np.array(fb.T, dtype=np.float32)))
        self.register_buffer("window", torch.hann_window(frame_length, periodic=True))
        self.magnitude_scaling = nn.Parameter(torch.tensor(float(magnitude_scaling)))

    def output_shape(self, num_samples: int) -> Tuple[int, int]:
        return self.n_mels, (num_samples - self.frame_length) // self.frame_step + 1

    def forward(self, x):
        x = x - x.min(dim=-1, keepdim=True).values
        x = x / (x.max(dim=-1, keepdim=True).values + 1e-6)
        x = (x - 0.5) * 2.0
        spec = torch.stft(
            x,
            n_fft=self.frame_length,
            hop_length=self.frame_step,
            win_length=self.frame_length,
            window=self.window,
            center=False,
            return_complex=True,
        ).abs()                                  # [B, bins, frames]
        spec = spec.transpose(1, 2) @ self.mel_filterbank  # [B, frames, n_mels]
        spec = spec.pow(2.0)
        spec = spec.pow(1.0 / (1.0 + torch.exp(self.magnitude_scaling)))
        spec = torch.flip(spec, dims=[-1])
        return spec.transpose(1, 2).unsqueeze(1)  # [B, 1, n_mels, frames]

    def extra_repr(self) -> str:
        return (
            f"sample_rate={self.sample_rate}, n_mels={self.n_mels}, frame_length={self.frame_length}, "
            f"frame_step={self.frame_step}, fmin={self.fmin}, fmax={self.fmax}"
        )


class InGraphBirdModel(nn.Module):
    """Raw waveform ``[B, clip_samples]`` -> logits, with the spectrogram computed in-graph."""

    def __init__(self, num_classes: int, clip_samples: int = 144000, dropout_rate: float = 0.3,
                 spec_layer: Optional[MelSpecLayer] = None):
        super().__init__()
        self.clip_samples = clip_samples
        self.spec_layer = spec_layer or MelSpecLayer()
        height, width = self.spec_layer.output_shape(clip_samples)
        self.classifier = BirdSoundCNN(ModelConfig(
            num_classes=num_classes, input_height=height, input_width=width, dropout_rate=dropout_rate,
        ))

    def forward(self, x):
        return self.classifier(self.spec_layer(x))


@dataclass
class ExtractedFeatures:
    inputs: torch.Tensor       # batch of one, ready for the model
    spectrogram: np.ndarray    # [frames, mels] in [0, 1], for display


class FeatureExtractor(ABC):
    variant: str = ""

    @abstractmethod
    def extract(self, audio: np.ndarray, sample_rate: int) -> ExtractedFeatures:
        """Turn a mono waveform recorded at ``sample_rate`` into model input."""


class PrecomputedMelExtractor(FeatureExtractor):
    """resample -> normalize -> center pad/trim -> log-mel -> ``[1, 1, M, T]``."""
    variant = "custom"

    def __init__(self, config: SpectrogramConfig):
        self.config = config
        self.mel_transform = get_mel_transform(config)

    def extract(self, audio, sample_rate):
        x = resample_audio(audio, sample_rate, self.config.sample_rate)
        spectrogram = self.mel_transform(x)
        return ExtractedFeatures(inputs=to_tensor(spectrogram), spectrogram=spectrogram)


class InGraphFeatureExtractor(FeatureExtractor):
    """resample -> head-aligned zero pad / trim to the clip -> waveform ``[1, T]``."""
    variant = "in_graph"

    def __init__(self, model: InGraphBirdModel):
        self.spec_layer = model.spec_layer
        self.sample_rate = model.spec_layer.sample_rate
        self.clip_samples = model.clip_samples

    def _fit_to_clip(self, x: np.ndarray) -> np.ndarray:
        if len(x) >= self.clip_samples:
            return x[:self.clip_samples].copy()
        return np.pad(x, (0, self.clip_samples - len(x))).astype(np.float32)

    def extract(self, audio, sample_rate):
        x = self._fit_to_clip(resample_audio(audio, sample_rate, self.sample_rate))
        inputs = torch.from_numpy(x).unsqueeze(0)
        device = self.spec_layer.mel_filterbank.device
        with torch.inference_mode():
            spec = self.spec_layer(inputs.to(device))[0, 0].T.cpu().numpy()
        return ExtractedFeatures(inputs=inputs, spectrogram=normalize_spectrogram(spec))


def extractor_for(variant: str, model: nn.Module, config: SpectrogramConfig) -> FeatureExtractor:
    if variant == "custom":
        return PrecomputedMelExtractor(config)
    if variant == "in_graph":
        if not isinstance(model, InGraphBirdModel):
            raise PreconditionError("The in_graph variant requires an InGraphBirdModel")
        return InGraphFeatureExtractor(model)
    raise PreconditionError(f"Unknown model variant {variant!r}, expected one of {VARIANTS}")
