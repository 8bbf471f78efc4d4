"""Configuration objects shared by the feature pipeline, the model and the trainer."""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from utils.errors import PreconditionError


@dataclass(frozen=True)
class SpectrogramConfig:
    """
    Parameters of one log-mel feature pipeline run.

    Frozen (and therefore hashable) so it can key the mel filterbank cache:
    any change produces a new config and thus a new filterbank.
    """
    sample_rate: int = 22050
    fft_size: int = 2048
    hop_length: int = 512
    n_mels: int = 128
    f_min: float = 0.0
    f_max: float = 11025.0
    target_duration: float = 3.0  # seconds

    @property
    def target_samples(self) -> int:
        return int(math.floor(self.target_duration * self.sample_rate))

    @property
    def num_bins(self) -> int:
        return self.fft_size // 2 + 1

    def validate(self) -> "SpectrogramConfig":
        if self.sample_rate <= 0:
            raise PreconditionError(f"sample_rate must be positive, got {self.sample_rate}")
        if self.fft_size < 2:
            raise PreconditionError(f"fft_size must be >= 2, got {self.fft_size}")
        if self.hop_length <= 0:
            raise PreconditionError(f"hop_length must be positive, got {self.hop_length}")
        if self.n_mels <= 0:
            raise PreconditionError(f"n_mels must be positive, got {self.n_mels}")
        if self.f_min < 0 or self.f_max <= self.f_min:
            raise PreconditionError(f"Invalid frequency range: f_min={self.f_min}, f_max={self.f_max}")
        if self.f_max > self.sample_rate / 2:
            raise PreconditionError(
                f"f_max={self.f_max} exceeds the Nyquist frequency {self.sample_rate / 2}"
            )
        if self.target_duration <= 0 or self.target_samples < self.fft_size:
            raise PreconditionError(
                f"Clip of {self.target_samples} samples is shorter than one FFT frame ({self.fft_size})"
            )
        return self

    def dimensions(self) -> Tuple[int, int]:
        """(mel bins, frame count) of a spectrogram produced with this config."""
        width = (self.target_samples - self.fft_size) // self.hop_length + 1
        return self.n_mels, width

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpectrogramConfig":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


DEFAULT_CONFIG = SpectrogramConfig()


@dataclass
class ModelConfig:
    """Input/output shape contract and head hyperparameters of the classifier."""
    num_classes: int
    input_height: int
    input_width: int
    learning_rate: float = 1e-3
    dropout_rate: float = 0.3

    @classmethod
    def for_classes(
        cls,
        num_classes: int,
        spectrogram_config: SpectrogramConfig = DEFAULT_CONFIG,
        learning_rate: float = 1e-3,
        dropout_rate: float = 0.3,
    ) -> "ModelConfig":
        height, width = spectrogram_config.dimensions()
        return cls(
            num_classes=num_classes,
            input_height=height,
            input_width=width,
            learning_rate=learning_rate,
            dropout_rate=dropout_rate,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelConfig":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class TrainingConfig:
    epochs: int = 50
    batch_size: int = 32
    learning_rate: float = 1e-3
    early_stopping_patience: int = 5
    checkpoint_dir: Path = field(default_factory=lambda: Path("artifacts"))
    log_path: Optional[Path] = None
    top_k: int = 3
    augment: bool = True
    augment_probability: float = 0.5
    seed: int = 42

    def __post_init__(self):
        self.checkpoint_dir = Path(self.checkpoint_dir)
        if self.log_path is not None:
            self.log_path = Path(self.log_path)
        if self.epochs <= 0 or self.batch_size <= 0:
            raise PreconditionError("epochs and batch_size must be positive")
        if self.early_stopping_patience <= 0:
            raise PreconditionError("early_stopping_patience must be positive")
