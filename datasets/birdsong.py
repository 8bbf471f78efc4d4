# datasets/birdsong.py
from __future__ import annotations

import random
from collections import Counter, defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import torch

from transforms.audio import get_mel_transform, load_audio, resample_audio, to_tensor
from transforms.augment import SpecAugment
from utils.class_map import BirdClass
from utils.config import DEFAULT_CONFIG, SpectrogramConfig
from utils.errors import PreconditionError
from utils.logging import get_logger

logger = get_logger("dataset")

AUDIO_EXTENSIONS = (".wav", ".flac", ".ogg", ".mp3", ".pcm", ".raw")

# (samples, sample_rate) for a given path
AudioLoader = Callable[[str], Tuple[np.ndarray, int]]


@dataclass(frozen=True)
class AudioSample:
    bird_id: str
    audio_path: str
    class_index: int


@dataclass
class DataSplit:
    train: List[AudioSample]
    validation: List[AudioSample]
    test: List[AudioSample]


@dataclass
class Batch:
    features: torch.Tensor  # [B, 1, n_mels, frames]
    labels: torch.Tensor    # [B, num_classes] one-hot


@dataclass
class DatasetStats:
    total_samples: int
    samples_per_class: Dict[int, int]
    train_samples: int
    validation_samples: int
    test_samples: int


def index_dataset(root: str, classes: Sequence[BirdClass]) -> List[AudioSample]:
    """
    Collect recordings laid out one folder per class::

        root/
          <bird id>/*.wav
          <bird id>/*.flac
          ...

    Classes without a folder are skipped (the class map stays stable).
    """
    root_path = Path(root)
    if not root_path.exists():
        raise FileNotFoundError(f"Dataset root not found: {root_path}")
    samples: List[AudioSample] = []
    for c in classes:
        class_dir = root_path / c.id
        if not class_dir.is_dir():
            logger.warning(f"No recordings folder for class {c.id!r}")
            continue
        files = sorted(p for p in class_dir.iterdir() if p.is_file() and p.suffix.lower() in AUDIO_EXTENSIONS)
        samples.extend(AudioSample(bird_id=c.id, audio_path=str(p), class_index=c.class_index) for p in files)
    logger.info(f"Indexed {len(samples)} recordings under {root_path}")
    return samples


def _check_ratios(train_ratio: float, validation_ratio: float) -> None:
    if not (0.0 < train_ratio < 1.0 and 0.0 <= validation_ratio < 1.0):
        raise PreconditionError(f"Invalid ratios: train={train_ratio}, validation={validation_ratio}")
    if train_ratio + validation_ratio > 1.0:
        raise PreconditionError("train_ratio + validation_ratio must be <= 1.0")


def _cut(items: List[AudioSample], train_ratio: float, validation_ratio: float):
    n = len(items)
    train_end = int(n * train_ratio)
    validation_end = train_end + int(n * validation_ratio)
    return items[:train_end], items[train_end:validation_end], items[validation_end:]


def random_split(
    samples: Sequence[AudioSample],
    train_ratio: float = 0.7,
    validation_ratio: float = 0.15,
    seed: int = 42,
) -> DataSplit:
    """Single global shuffle, then cut. Rare classes may miss validation/test."""
    _check_ratios(train_ratio, validation_ratio)
    shuffled = list(samples)
    random.Random(seed).shuffle(shuffled)
    train, val, test = _cut(shuffled, train_ratio, validation_ratio)
    return DataSplit(train=train, validation=val, test=test)


def stratified_split(
    samples: Sequence[AudioSample],
    train_ratio: float = 0.7,
    validation_ratio: float = 0.15,
    seed: int = 42,
) -> DataSplit:
    """
    Per-class shuffle and cut, remainder to test.

    Every class is cut on its own (``floor(n * ratio)`` for train and
    validation), so each split holds each class in proportion to its size.
    A class with fewer than three samples cannot reach all three splits.
    """
    _check_ratios(train_ratio, validation_ratio)
    by_class: Dict[int, List[AudioSample]] = defaultdict(list)
    for s in samples:
        by_class[s.class_index].append(s)

    rng = random.Random(seed)
    train: List[AudioSample] = []
    validation: List[AudioSample] = []
    test: List[AudioSample] = []
    for class_index in sorted(by_class):
        items = list(by_class[class_index])
        rng.shuffle(items)
        tr, va, te = _cut(items, train_ratio, validation_ratio)
        if not (tr and va and te):
            logger.warning(
                f"Class {class_index} has {len(items)} samples and is missing from at least one split"
            )
        train.extend(tr)
        validation.extend(va)
        test.extend(te)
    return DataSplit(train=train, validation=validation, test=test)


def get_dataset_stats(split: DataSplit) -> DatasetStats:
    all_samples = split.train + split.validation + split.test
    return DatasetStats(
        total_samples=len(all_samples),
        samples_per_class=dict(Counter(s.class_index for s in all_samples)),
        train_samples=len(split.train),
        validation_samples=len(split.validation),
        test_samples=len(split.test),
    )


def one_hot(class_index: int, num_classes: int) -> np.ndarray:
    if not 0 <= class_index < num_classes:
        raise PreconditionError(f"class_index {class_index} outside 0..{num_classes - 1}")
    encoded = np.zeros(num_classes, dtype=np.float32)
    encoded[class_index] = 1.0
    return encoded


class DataGenerator:
    """
    Batches of ``(features, one-hot labels)`` built on the fly from audio files.

    The sample order is shuffled deterministically from ``seed``; every
    :meth:`reset` starts a new epoch with a new (still reproducible) order.
    Augmentation, if enabled, applies to each sample with probability
    ``augment_probability`` and should only be used for training data.
    Files that fail to load are logged and skipped.
    """

    def __init__(
        self,
        samples: Sequence[AudioSample],
        num_classes: int,
        batch_size: int = 32,
        config: SpectrogramConfig = DEFAULT_CONFIG,
        augment: bool = False,
        augment_probability: float = 0.5,
        seed: int = 42,
        loader: Optional[AudioLoader] = None,
    ):
        if batch_size <= 0:
            raise PreconditionError(f"batch_size must be positive, got {batch_size}")
        self.samples = list(samples)
        self.num_classes = num_classes
        self.batch_size = batch_size
        self.config = config
        self.mel_transform = get_mel_transform(config)
        self.augmenter = SpecAugment(p=augment_probability, seed=seed) if augment else None
        self.loader = loader or (lambda path: load_audio(path, raw_sample_rate=config.sample_rate))
        self._rng = random.Random(seed)
        self._order: List[AudioSample] = []
        self._cursor = 0
        self.reset()

    def __len__(self) -> int:
        return self.num_batches

    @property
    def num_batches(self) -> int:
        return (len(self.samples) + self.batch_size - 1) // self.batch_size

    def reset(self) -> None:
        self._order = list(self.samples)
        self._rng.shuffle(self._order)
        self._cursor = 0

    def _features(self, sample: AudioSample) -> np.ndarray:
        audio, sr = self.loader(sample.audio_path)
        audio = resample_audio(audio, sr, self.config.sample_rate)
        spectrogram = self.mel_transform(audio)
        if self.augmenter is not None:
            spectrogram = self.augmenter(spectrogram)
        return spectrogram

    def next_batch(self) -> Optional[Batch]:
        """Next batch of the epoch, or ``None`` once the epoch is exhausted."""
        while self._cursor < len(self._order):
            chunk = self._order[self._cursor:self._cursor + self.batch_size]
            self._cursor += self.batch_size

            features: List[torch.Tensor] = []
            labels: List[np.ndarray] = []
            for sample in chunk:
                try:
                    spectrogram = self._features(sample)
                except (OSError, RuntimeError, ValueError) as e:
                    logger.error(f"Error processing {sample.audio_path}: {e}", exc_info=True)
                    continue
                features.append(to_tensor(spectrogram))
                labels.append(one_hot(sample.class_index, self.num_classes))
            if features:
                return Batch(features=torch.cat(features, dim=0), labels=torch.from_numpy(np.stack(labels)))
            logger.warning("Skipping a batch in which no sample could be loaded")
        return None

    def __iter__(self) -> Iterator[Batch]:
        batch = self.next_batch()
        while batch is not None:
            yield batch
            batch = self.next_batch()
