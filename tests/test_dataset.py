"""Tests for dataset indexing, splitting, batching and augmentation."""
import sys
import tempfile
from collections import Counter
from pathlib import Path

import numpy as np
import pytest
import torch

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from datasets.birdsong import (
    DataGenerator,
    get_dataset_stats,
    index_dataset,
    one_hot,
    random_split,
    stratified_split,
)
from helpers import SMALL_CONFIG, make_classes, make_samples, tone_loader
from transforms.augment import SpecAugment, add_noise, apply_augmentation, freq_mask, time_mask
from utils.errors import PreconditionError


def create_mock_dataset(tmpdir, classes, per_class=3):
    """One folder per bird id with a few (unreadable) audio files and a stray text file."""
    for c in classes:
        class_dir = Path(tmpdir) / c.id
        class_dir.mkdir(parents=True)
        for i in range(per_class):
            (class_dir / f"{c.id}.{i:05d}.wav").write_bytes(b"dummy wav content")
        (class_dir / "notes.txt").write_text("not audio")
    return str(tmpdir)


class TestIndexing:
    """Folder-per-class layout."""

    def test_index_dataset(self):
        classes = make_classes()
        with tempfile.TemporaryDirectory() as tmpdir:
            root = create_mock_dataset(tmpdir, classes)
            samples = index_dataset(root, classes)
            assert len(samples) == 9
            assert all(s.audio_path.endswith(".wav") for s in samples)
            for s in samples:
                assert classes[s.class_index].id == s.bird_id

    def test_missing_class_folder_is_skipped(self):
        classes = make_classes()
        with tempfile.TemporaryDirectory() as tmpdir:
            root = create_mock_dataset(tmpdir, classes[:2])
            samples = index_dataset(root, classes)
            assert {s.class_index for s in samples} == {0, 1}

    def test_missing_root_raises(self):
        with pytest.raises(FileNotFoundError):
            index_dataset("/nonexistent/birds", make_classes())


class TestSplits:
    """Stratified and random splits."""

    def test_stratified_split_keeps_every_class(self):
        samples = make_samples(per_class=10)
        split = stratified_split(samples, train_ratio=0.7, validation_ratio=0.15, seed=42)
        for part, ratio in ((split.train, 0.7), (split.validation, 0.15), (split.test, 0.15)):
            counts = Counter(s.class_index for s in part)
            assert set(counts) == {0, 1, 2}
            for n in counts.values():
                assert abs(n - ratio * 10) <= 1

    def test_stratified_split_partitions_samples(self):
        samples = make_samples(per_class=10)
        split = stratified_split(samples, seed=1)
        combined = split.train + split.validation + split.test
        assert sorted(s.audio_path for s in combined) == sorted(s.audio_path for s in samples)

    def test_stratified_split_is_deterministic(self):
        samples = make_samples(per_class=10)
        a = stratified_split(samples, seed=7)
        b = stratified_split(samples, seed=7)
        assert [s.audio_path for s in a.train] == [s.audio_path for s in b.train]
        assert [s.audio_path for s in a.test] == [s.audio_path for s in b.test]
        c = stratified_split(samples, seed=8)
        assert len(c.train) == len(a.train)

    def test_invalid_ratios(self):
        with pytest.raises(PreconditionError):
            stratified_split(make_samples(), train_ratio=0.9, validation_ratio=0.2)
        with pytest.raises(PreconditionError):
            random_split(make_samples(), train_ratio=0.0)

    def test_random_split_sizes(self):
        split = random_split(make_samples(per_class=10), train_ratio=0.7, validation_ratio=0.15)
        assert (len(split.train), len(split.validation), len(split.test)) == (21, 4, 5)

    def test_dataset_stats(self):
        split = stratified_split(make_samples(per_class=10))
        stats = get_dataset_stats(split)
        assert stats.total_samples == 30
        assert stats.samples_per_class == {0: 10, 1: 10, 2: 10}
        assert stats.train_samples + stats.validation_samples + stats.test_samples == 30


class TestDataGenerator:
    """Batches built on the fly."""

    def test_batch_shapes(self):
        gen = DataGenerator(make_samples(per_class=3), num_classes=3, batch_size=4,
                            config=SMALL_CONFIG, loader=tone_loader)
        assert gen.num_batches == 3
        batches = list(gen)
        assert [b.features.shape[0] for b in batches] == [4, 4, 1]
        for b in batches:
            assert tuple(b.features.shape[1:]) == (1, 16, 17)
            assert b.labels.shape[1] == 3
            torch.testing.assert_close(b.labels.sum(dim=1), torch.ones(b.labels.shape[0]))

    def test_labels_match_samples(self):
        gen = DataGenerator(make_samples(per_class=2), num_classes=3, batch_size=6,
                            config=SMALL_CONFIG, loader=tone_loader)
        batch = gen.next_batch()
        assert sorted(batch.labels.argmax(dim=1).tolist()) == [0, 0, 1, 1, 2, 2]
        assert gen.next_batch() is None

    def test_reset_reshuffles_reproducibly(self):
        samples = make_samples(per_class=4)
        a = DataGenerator(samples, num_classes=3, batch_size=4, config=SMALL_CONFIG, seed=3, loader=tone_loader)
        b = DataGenerator(samples, num_classes=3, batch_size=4, config=SMALL_CONFIG, seed=3, loader=tone_loader)
        first_epoch = [s.audio_path for s in a._order]
        assert first_epoch == [s.audio_path for s in b._order]
        a.reset()
        b.reset()
        assert [s.audio_path for s in a._order] == [s.audio_path for s in b._order]
        assert sorted(first_epoch) == sorted(s.audio_path for s in a._order)

    def test_failed_samples_are_skipped(self):
        def flaky_loader(path):
            if path.endswith("1_0.wav"):
                raise OSError("corrupt file")
            return tone_loader(path)

        gen = DataGenerator(make_samples(per_class=2), num_classes=3, batch_size=6,
                            config=SMALL_CONFIG, loader=flaky_loader)
        batch = gen.next_batch()
        assert batch.features.shape[0] == 5

    def test_batch_of_only_failures_is_skipped(self):
        def broken_loader(path):
            raise ValueError("unreadable")

        gen = DataGenerator(make_samples(per_class=2), num_classes=3, batch_size=2,
                            config=SMALL_CONFIG, loader=broken_loader)
        assert gen.next_batch() is None

    def test_one_hot(self):
        np.testing.assert_array_equal(one_hot(2, 4), [0, 0, 1, 0])
        with pytest.raises(PreconditionError):
            one_hot(4, 4)


class TestAugmentation:
    """Masking and noise stay within their documented bounds."""

    def test_time_mask_width(self):
        rng = np.random.default_rng(0)
        for _ in range(20):
            out = time_mask(np.ones((100, 64), dtype=np.float32), rng)
            masked_rows = int(np.sum(np.all(out == 0.0, axis=1)))
            assert 5 <= masked_rows <= 24

    def test_freq_mask_height(self):
        rng = np.random.default_rng(1)
        for _ in range(20):
            out = freq_mask(np.ones((100, 64), dtype=np.float32), rng)
            masked_cols = int(np.sum(np.all(out == 0.0, axis=0)))
            assert 3 <= masked_cols <= 17

    def test_noise_level(self):
        rng = np.random.default_rng(2)
        spec = np.full((50, 16), 0.5, dtype=np.float32)
        for _ in range(20):
            out = add_noise(spec, rng)
            assert np.max(np.abs(out - spec)) <= 0.01 + 1e-6

    def test_augmentation_returns_copy(self):
        spec = np.ones((40, 20), dtype=np.float32)
        apply_augmentation(spec, "time_mask", np.random.default_rng(0))
        assert np.all(spec == 1.0)

    def test_unknown_augmentation(self):
        with pytest.raises(PreconditionError):
            apply_augmentation(np.ones((4, 4), dtype=np.float32), "pitch_shift")

    def test_spec_augment_probability(self):
        spec = np.ones((40, 20), dtype=np.float32)
        never = SpecAugment(p=0.0, seed=0)
        assert all(never(spec) is spec for _ in range(10))
        always = SpecAugment(p=1.0, seed=0)
        assert all(always(spec) is not spec for _ in range(10))
