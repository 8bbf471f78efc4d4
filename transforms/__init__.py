"""Audio feature transforms: preprocessing, STFT, mel projection and augmentation."""
from transforms.audio import (
    generate_mel_spectrogram,
    get_mel_transform,
    normalize_audio,
    pad_or_trim,
    resample_audio,
    to_tensor,
    wav_to_logmel,
)
from transforms.augment import SpecAugment

__all__ = [
    'generate_mel_spectrogram', 'get_mel_transform', 'wav_to_logmel', 'to_tensor',
    'normalize_audio', 'resample_audio', 'pad_or_trim',
    'SpecAugment',
]
