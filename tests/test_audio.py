"""Tests for waveform preprocessing and spectrogram post-processing."""
import sys
import tempfile
from pathlib import Path

import numpy as np
import pytest
import soundfile as sf
import torch

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from helpers import SMALL_CONFIG, sine
from transforms.audio import (
    decode_pcm16,
    generate_mel_spectrogram,
    load_audio,
    normalize_audio,
    normalize_spectrogram,
    pad_or_trim,
    power_to_db,
    preprocess_audio_buffer,
    resample_audio,
    to_tensor,
    wav_to_logmel,
    get_mel_transform,
)
from utils.errors import PreconditionError


class TestPreprocessing:
    """Normalization, resampling, pad/trim and PCM decoding."""

    def test_normalize_peak_is_one(self):
        x = np.array([0.1, -0.4, 0.2], dtype=np.float32)
        out = normalize_audio(x)
        assert np.max(np.abs(out)) == pytest.approx(1.0)
        assert out[1] == pytest.approx(-1.0)
        # input untouched
        assert x[1] == pytest.approx(-0.4)

    def test_normalize_silence_unchanged(self):
        x = np.zeros(100, dtype=np.float32)
        np.testing.assert_array_equal(normalize_audio(x), x)

    def test_resample_identity(self):
        x = np.random.default_rng(0).standard_normal(1000).astype(np.float32)
        out = resample_audio(x, 22050, 22050)
        np.testing.assert_array_equal(out, x)
        assert out is not x

    def test_resample_length(self):
        x = np.zeros(44100, dtype=np.float32)
        assert len(resample_audio(x, 44100, 22050)) == 22050
        assert len(resample_audio(np.zeros(1000, dtype=np.float32), 16000, 8000)) == 500
        assert len(resample_audio(np.zeros(1000, dtype=np.float32), 8000, 16000)) == 2000

    def test_resample_interpolates(self):
        x = np.array([0.0, 1.0, 2.0, 3.0], dtype=np.float32)
        out = resample_audio(x, 1, 2)
        np.testing.assert_allclose(out, [0.0, 0.5, 1.0, 1.5, 2.0, 2.5, 3.0, 3.0])

    def test_resample_rejects_bad_rates(self):
        with pytest.raises(PreconditionError):
            resample_audio(np.zeros(10, dtype=np.float32), 0, 8000)

    def test_pad_or_trim_lengths(self):
        for n in (0, 1, 99, 100, 101, 250):
            assert len(pad_or_trim(np.ones(n, dtype=np.float32), 100)) == 100

    def test_pad_is_centered_with_extra_zero_at_end(self):
        out = pad_or_trim(np.ones(3, dtype=np.float32), 6)
        np.testing.assert_array_equal(out, [0, 1, 1, 1, 0, 0])

    def test_trim_is_centered_with_extra_sample_dropped_at_end(self):
        x = np.arange(7, dtype=np.float32)
        np.testing.assert_array_equal(pad_or_trim(x, 4), [1, 2, 3, 4])
        np.testing.assert_array_equal(pad_or_trim(np.arange(6, dtype=np.float32), 4), [1, 2, 3, 4])

    def test_decode_pcm16(self):
        pcm = np.array([0, 16384, -32768, 32767], dtype="<i2").tobytes()
        out = decode_pcm16(pcm)
        np.testing.assert_allclose(out, [0.0, 0.5, -1.0, 32767 / 32768])
        assert out.dtype == np.float32

    def test_decode_pcm16_ignores_trailing_byte(self):
        pcm = np.array([100, 200], dtype="<i2").tobytes() + b"\x01"
        assert len(decode_pcm16(pcm)) == 2


class TestLoadAudio:
    """File loading through soundfile and the raw PCM path."""

    def test_load_wav_mono(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "tone.wav"
            sf.write(str(path), sine(440.0), 8000)
            audio, sr = load_audio(path)
            assert sr == 8000
            assert audio.dtype == np.float32
            assert len(audio) == 2400

    def test_load_wav_stereo_is_averaged(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "stereo.wav"
            left = np.full(100, 0.5, dtype=np.float32)
            right = np.full(100, -0.5, dtype=np.float32)
            sf.write(str(path), np.stack([left, right], axis=1), 8000)
            audio, _ = load_audio(path)
            assert audio.ndim == 1
            np.testing.assert_allclose(audio, 0.0, atol=1e-4)

    def test_load_raw_pcm(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "clip.pcm"
            path.write_bytes(np.array([0, 16384], dtype="<i2").tobytes())
            audio, sr = load_audio(path, raw_sample_rate=16000)
            assert sr == 16000
            np.testing.assert_allclose(audio, [0.0, 0.5])


class TestPostProcessing:
    """dB conversion, normalization and tensor packing."""

    def test_power_to_db(self):
        out = power_to_db(np.array([[1.0, 10.0, 0.0]], dtype=np.float32))
        np.testing.assert_allclose(out, [[0.0, 20.0, -100.0]], atol=1e-4)

    def test_db_then_normalize_in_unit_range(self):
        mel = np.abs(np.random.default_rng(1).standard_normal((20, 16))).astype(np.float32)
        out = normalize_spectrogram(power_to_db(mel))
        assert out.min() >= 0.0
        assert out.max() <= 1.0
        assert out.min() == pytest.approx(0.0)
        assert out.max() == pytest.approx(1.0)

    def test_normalize_flat_spectrogram_is_zero(self):
        out = normalize_spectrogram(np.full((4, 4), -30.0, dtype=np.float32))
        np.testing.assert_array_equal(out, np.zeros((4, 4), dtype=np.float32))

    def test_to_tensor_layout(self):
        spec = np.arange(12, dtype=np.float32).reshape(3, 4)  # [T=3, M=4]
        packed = to_tensor(spec)
        assert tuple(packed.shape) == (1, 1, 4, 3)
        for t in range(3):
            for f in range(4):
                assert packed[0, 0, f, t].item() == spec[t, f]

    def test_to_tensor_rejects_empty(self):
        with pytest.raises(PreconditionError):
            to_tensor(np.zeros((0, 16), dtype=np.float32))


class TestPipeline:
    """End-to-end waveform -> log-mel."""

    def test_mel_spectrogram_shape(self):
        spec = generate_mel_spectrogram(sine(1000.0), SMALL_CONFIG)
        assert spec.shape == (17, 16)
        assert spec.min() >= 0.0 and spec.max() <= 1.0

    def test_short_and_long_input_give_same_shape(self):
        short = generate_mel_spectrogram(sine(1000.0, seconds=0.1), SMALL_CONFIG)
        long = generate_mel_spectrogram(sine(1000.0, seconds=1.0), SMALL_CONFIG)
        assert short.shape == long.shape == SMALL_CONFIG.dimensions()[::-1]

    def test_direct_and_fft_pipelines_agree(self):
        x = sine(1234.0)
        fast = get_mel_transform(SMALL_CONFIG, stft_method="fft")(x)
        slow = get_mel_transform(SMALL_CONFIG, stft_method="direct")(x)
        np.testing.assert_allclose(fast, slow, atol=1e-3)

    def test_wav_to_logmel_accepts_tensor(self):
        mel_t = get_mel_transform(SMALL_CONFIG)
        out = wav_to_logmel(torch.from_numpy(sine(800.0)).unsqueeze(0), mel_t)
        assert tuple(out.shape) == (1, 16, 17)

    def test_preprocess_audio_buffer(self):
        pcm = (sine(1000.0, sr=16000) * 32767).astype("<i2").tobytes()
        packed = preprocess_audio_buffer(pcm, orig_sr=16000, config=SMALL_CONFIG)
        assert tuple(packed.shape) == (1, 1, 16, 17)
