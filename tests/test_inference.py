"""Tests for ranking, the demo fallback and the inference service lifecycle."""
import asyncio
import sys
import tempfile
import threading
import time
from pathlib import Path

import numpy as np
import pytest
import torch
import torch.nn as nn

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from helpers import SMALL_CONFIG, make_classes, sine, small_model_config
from models.feature_layers import InGraphBirdModel, MelSpecLayer
from models.metadata import MetadataModel
from utils.checkpoint import LoadedArtifacts, load_artifacts, save_metadata_model, save_model
from utils.class_map import create_class_mapping
from utils.errors import LoadInProgressError, PreconditionError, ResourceUnavailableError
from utils.inference import (
    GeoContext,
    InferenceService,
    ModelState,
    create_demo_predictions,
    demo_confidences,
    rank_predictions,
)
from utils.models import build_model


def save_small_model(artifacts_dir):
    torch.manual_seed(0)
    config = small_model_config()
    save_model(build_model(config), artifacts_dir, config, SMALL_CONFIG, classes=make_classes())


def many_classes(n=10):
    return create_class_mapping([{"id": f"bird{i}", "name": f"Bird {i}"} for i in range(n)])


class TestRanking:
    """Top-K selection."""

    def test_rank_predictions(self):
        classes = create_class_mapping([{"id": "A"}, {"id": "B"}, {"id": "C"}])
        ranked = rank_predictions([0.1, 0.5, 0.4], classes, top_k=2)
        assert [(p.bird_id, p.rank) for p in ranked] == [("B", 1), ("C", 2)]
        assert [p.confidence for p in ranked] == pytest.approx([0.5, 0.4])

    def test_ties_keep_class_order(self):
        classes = create_class_mapping([{"id": "A"}, {"id": "B"}, {"id": "C"}])
        ranked = rank_predictions([0.3, 0.3, 0.4], classes, top_k=3)
        assert [p.bird_id for p in ranked] == ["C", "A", "B"]

    def test_invalid_top_k(self):
        with pytest.raises(PreconditionError):
            rank_predictions([1.0], create_class_mapping([{"id": "A"}]), top_k=0)


class TestDemoPredictions:
    """Synthetic results when no model is available."""

    def test_confidences_sum_to_one_and_descend(self):
        result = create_demo_predictions(many_classes(), top_k=5, seed=1)
        confidences = [p.confidence for p in result.predictions]
        assert len(confidences) == 5
        assert sum(confidences) == pytest.approx(1.0)
        assert all(a > b for a, b in zip(confidences, confidences[1:]))
        assert [p.rank for p in result.predictions] == [1, 2, 3, 4, 5]
        assert result.demo and result.success
        assert len(result.spectrogram) == 128
        assert all(len(row) == 128 for row in result.spectrogram)

    def test_seed_is_reproducible(self):
        a = create_demo_predictions(many_classes(), top_k=3, seed=7)
        b = create_demo_predictions(many_classes(), top_k=3, seed=7)
        assert [p.bird_id for p in a.predictions] == [p.bird_id for p in b.predictions]
        assert [p.confidence for p in a.predictions] == [p.confidence for p in b.predictions]

    def test_tied_confidences_are_redrawn(self):
        class ScriptedRng:
            def __init__(self, draws):
                self.draws = [np.array(d) for d in draws]

            def uniform(self, low, high, size):
                return self.draws.pop(0)

        rng = ScriptedRng([[0.4, 0.4, 0.2], [0.5, 0.5, 0.5], [0.5, 0.3, 0.2]])
        confidences = demo_confidences(rng, 3)
        np.testing.assert_allclose(confidences, [0.5, 0.3, 0.2])
        assert rng.draws == []

    @pytest.mark.parametrize("seed", range(20))
    def test_strictly_descending_for_any_seed(self, seed):
        result = create_demo_predictions(many_classes(), top_k=10, seed=seed)
        confidences = [p.confidence for p in result.predictions]
        assert all(a > b for a, b in zip(confidences, confidences[1:]))
        assert sum(confidences) == pytest.approx(1.0)

    def test_top_k_capped_by_class_count(self):
        result = create_demo_predictions(many_classes(2), top_k=5, seed=0)
        assert len(result.predictions) == 2

    def test_requires_classes(self):
        with pytest.raises(PreconditionError):
            create_demo_predictions([], top_k=5)


class TestInferenceService:
    """Lifecycle and identification."""

    def test_identify(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            save_small_model(tmpdir)
            service = InferenceService(tmpdir)
            result = asyncio.run(service.identify(sine(1500.0, sr=16000), 16000, top_k=2))

            assert result.success, result.error
            assert not result.demo
            assert [p.rank for p in result.predictions] == [1, 2]
            assert result.predictions[0].confidence >= result.predictions[1].confidence
            assert len(result.spectrogram) == 17
            assert all(len(row) == 16 for row in result.spectrogram)
            assert result.processing_time_ms >= 0.0
            assert service.state is ModelState.LOADED
            assert service.status() == {"loaded": True, "num_classes": 3, "error": None}
            assert service.training_status() == service.status()

    def test_top_k_larger_than_classes(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            save_small_model(tmpdir)
            service = InferenceService(tmpdir)
            result = asyncio.run(service.identify(sine(700.0), 8000, top_k=10))
            assert len(result.predictions) == 3
            assert sum(p.confidence for p in result.predictions) == pytest.approx(1.0, rel=1e-5)

    def test_concurrent_calls_share_one_load(self):
        calls = []

        def slow_loader(path, device):
            calls.append(path)
            time.sleep(0.05)
            return load_artifacts(path, device)

        with tempfile.TemporaryDirectory() as tmpdir:
            save_small_model(tmpdir)
            service = InferenceService(tmpdir, loader=slow_loader)

            async def scenario():
                return await asyncio.gather(*[
                    service.identify(sine(500.0 * (i + 1)), 8000, top_k=3) for i in range(4)
                ])

            results = asyncio.run(scenario())
            assert all(r.success for r in results)
            assert len(calls) == 1
            assert service.load_count == 1

    def test_failed_load_is_remembered(self):
        attempts = []

        def flaky_loader(path, device):
            attempts.append(path)
            time.sleep(0.02)
            if len(attempts) == 1:
                raise ResourceUnavailableError("Class map not found")
            return load_artifacts(path, device)

        with tempfile.TemporaryDirectory() as tmpdir:
            save_small_model(tmpdir)
            service = InferenceService(tmpdir, loader=flaky_loader)

            async def scenario():
                first = await asyncio.gather(
                    service.identify(sine(500.0), 8000),
                    service.identify(sine(900.0), 8000),
                )
                again = await service.identify(sine(500.0), 8000)
                state_after_failure = service.state
                await service.load()
                recovered = await service.identify(sine(500.0), 8000)
                return first, again, state_after_failure, recovered

            first, again, state_after_failure, recovered = asyncio.run(scenario())
            assert [r.success for r in first] == [False, False]
            assert first[0].error == first[1].error == "Class map not found"
            assert not again.success
            assert again.error == "Class map not found"
            assert state_after_failure is ModelState.ERROR
            assert recovered.success
            assert len(attempts) == 2

    def test_load_in_progress(self):
        gate = threading.Event()

        def gated_loader(path, device):
            gate.wait(5)
            return load_artifacts(path, device)

        with tempfile.TemporaryDirectory() as tmpdir:
            save_small_model(tmpdir)
            service = InferenceService(tmpdir, loader=gated_loader)

            async def scenario():
                task = asyncio.create_task(service.load())
                while service.state is not ModelState.LOADING:
                    await asyncio.sleep(0)
                with pytest.raises(LoadInProgressError):
                    await service.ensure_loaded(wait=False)
                with pytest.raises(LoadInProgressError):
                    service.unload()
                gate.set()
                await task
                return await service.ensure_loaded(wait=False)

            artifacts = asyncio.run(scenario())
            assert len(artifacts.classes) == 3
            service.unload()
            assert service.state is ModelState.UNLOADED
            assert service.classes == []

    def test_cancelled_load_is_retried(self):
        def slow_loader(path, device):
            time.sleep(0.3)
            return load_artifacts(path, device)

        with tempfile.TemporaryDirectory() as tmpdir:
            save_small_model(tmpdir)
            service = InferenceService(tmpdir, loader=slow_loader)

            async def scenario():
                first = asyncio.create_task(service.identify(sine(500.0), 8000))
                await asyncio.sleep(0.05)
                first.cancel()
                with pytest.raises(asyncio.CancelledError):
                    await first
                state_after_cancel = service.state

                # a request queued behind the cancelled one takes over the load
                leader = asyncio.create_task(service.identify(sine(500.0), 8000))
                follower = asyncio.create_task(service.identify(sine(900.0), 8000))
                await asyncio.sleep(0.05)
                leader.cancel()
                with pytest.raises(asyncio.CancelledError):
                    await leader
                followed = await follower
                again = await service.identify(sine(500.0), 8000)
                return state_after_cancel, followed, again

            state_after_cancel, followed, again = asyncio.run(scenario())
            assert state_after_cancel is ModelState.UNLOADED
            assert followed.success, followed.error
            assert again.success, again.error
            assert service.state is ModelState.LOADED
            assert service.error is None
            assert service.load_count == 3

    def test_missing_model_without_fallback(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            service = InferenceService(tmpdir)
            result = asyncio.run(service.identify(sine(500.0), 8000))
            assert not result.success
            assert "not found" in result.error
            assert result.predictions == []
            assert service.status()["error"] == result.error

    def test_missing_model_with_fallback_serves_demo(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            service = InferenceService(tmpdir, fallback_classes=many_classes(), demo_seed=3)
            result = asyncio.run(service.identify(sine(500.0), 8000, top_k=4))
            assert result.success and result.demo
            assert len(result.predictions) == 4

    def test_bad_input_is_a_structured_failure(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            save_small_model(tmpdir)
            service = InferenceService(tmpdir)

            async def scenario():
                return (
                    await service.identify([], 8000),
                    await service.identify(sine(500.0), 8000, top_k=0),
                    await service.identify(sine(500.0), 0),
                )

            for result in asyncio.run(scenario()):
                assert not result.success
                assert result.error

    def test_forward_failure_is_reported(self):
        class ExplodingModel(nn.Module):
            def forward(self, x):
                raise RuntimeError("CUDA error: device-side assert triggered")

        def loader(path, device):
            return LoadedArtifacts(
                model=ExplodingModel(),
                classes=make_classes(),
                variant="custom",
                model_config=small_model_config(),
                spectrogram_config=SMALL_CONFIG,
            )

        service = InferenceService("unused", loader=loader)
        result = asyncio.run(service.identify(sine(500.0), 8000))
        assert not result.success
        assert "Forward pass failed" in result.error
        assert service.state is ModelState.LOADED

    def test_result_to_dict(self):
        result = create_demo_predictions(many_classes(3), top_k=2, seed=0)
        data = result.to_dict()
        assert data["demo"] is True
        assert set(data["predictions"][0]) == {"bird_id", "bird_name", "scientific_name", "confidence", "rank"}


class TestMetadataFusion:
    """Location/season weighting."""

    def test_meta_model_reweights_scores(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            save_small_model(tmpdir)
            meta = MetadataModel(3)
            with torch.no_grad():
                meta.net[-1].weight.zero_()
                meta.net[-1].bias.copy_(torch.tensor([-20.0, 20.0, 20.0]))
            save_metadata_model(meta, tmpdir)

            service = InferenceService(tmpdir)
            audio = sine(1500.0)

            async def scenario():
                plain, _ = await service.predict(audio, 8000, top_k=3)
                weighted, _ = await service.predict(audio, 8000, top_k=3, geo=GeoContext(52.1, 5.2, 18))
                return plain, weighted

            plain, weighted = asyncio.run(scenario())
            plain = {p.bird_id: p.confidence for p in plain}
            weighted = {p.bird_id: p.confidence for p in weighted}
            assert weighted["blackbird"] < 1e-6
            assert weighted["robin"] == pytest.approx(plain["robin"], rel=1e-5)
            assert weighted["wren"] == pytest.approx(plain["wren"], rel=1e-5)


class TestInGraphService:
    """The waveform-input variant end to end."""

    def test_in_graph_round_trip(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            torch.manual_seed(0)
            layer = MelSpecLayer(sample_rate=8000, n_mels=16, frame_length=256, frame_step=128,
                                 fmin=0.0, fmax=4000.0)
            model = InGraphBirdModel(3, clip_samples=2176, spec_layer=layer)
            with torch.no_grad():
                model.spec_layer.magnitude_scaling.fill_(0.5)
            save_model(model, tmpdir, small_model_config(), SMALL_CONFIG, classes=make_classes())

            artifacts = load_artifacts(tmpdir)
            assert artifacts.variant == "in_graph"
            assert artifacts.model.clip_samples == 2176
            assert artifacts.model.spec_layer.magnitude_scaling.item() == pytest.approx(0.5)

            service = InferenceService(tmpdir)
            result = asyncio.run(service.identify(sine(1500.0, sr=16000, seconds=0.5), 16000, top_k=3))
            assert result.success, result.error
            assert len(result.spectrogram) == 16
            assert all(0.0 <= v <= 1.0 for row in result.spectrogram for v in row)
