"""Shared test data: a tiny spectrogram config and synthetic recordings."""
import sys
from pathlib import Path

import numpy as np

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from datasets.birdsong import AudioSample
from utils.class_map import create_class_mapping
from utils.config import ModelConfig, SpectrogramConfig

# 2400 samples -> 17 frames of 16 mel bins
SMALL_CONFIG = SpectrogramConfig(
    sample_rate=8000,
    fft_size=256,
    hop_length=128,
    n_mels=16,
    f_min=0.0,
    f_max=4000.0,
    target_duration=0.3,
)

BIRDS = [
    {"id": "blackbird", "name": "Eurasian Blackbird", "scientific_name": "Turdus merula"},
    {"id": "robin", "name": "European Robin", "scientific_name": "Erithacus rubecula"},
    {"id": "wren", "name": "Eurasian Wren", "scientific_name": "Troglodytes troglodytes"},
]

# one tone per class so the classes are separable
CLASS_FREQS = {0: 500.0, 1: 1500.0, 2: 3000.0}


def make_classes():
    return create_class_mapping(BIRDS)


def small_model_config(num_classes=3):
    return ModelConfig.for_classes(num_classes, SMALL_CONFIG)


def sine(freq, sr=8000, seconds=0.3, amp=0.5):
    t = np.arange(int(sr * seconds)) / sr
    return (amp * np.sin(2 * np.pi * freq * t)).astype(np.float32)


def tone_loader(path):
    """Fake audio loader: '<class index>_<n>.wav' -> tone of that class plus a little noise."""
    stem = Path(path).stem
    class_index, n = (int(p) for p in stem.split("_"))
    rng = np.random.default_rng(class_index * 1000 + n)
    audio = sine(CLASS_FREQS[class_index]) + 0.01 * rng.standard_normal(2400).astype(np.float32)
    return audio, 8000


def make_samples(per_class=10, num_classes=3):
    classes = make_classes()
    return [
        AudioSample(bird_id=classes[c].id, audio_path=f"/fake/{classes[c].id}/{c}_{n}.wav", class_index=c)
        for c in range(num_classes)
        for n in range(per_class)
    ]
