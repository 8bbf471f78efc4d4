"""
Inference service: model lifecycle, top-K ranking and the demo fallback.

The service is an explicit object (no module-level model cache). Its state
moves ``unloaded -> loading -> loaded | error``; only one load runs at a time
and callers arriving during a load either wait for it or get
:class:`LoadInProgressError`. A failed load is remembered and reported on every
call until :meth:`InferenceService.load` is called again and succeeds. A load
whose caller is cancelled goes back to ``unloaded``.
"""
from __future__ import annotations

import asyncio
import enum
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import torch

from models.feature_layers import FeatureExtractor, extractor_for
from models.metadata import MetadataModel
from utils.checkpoint import LoadedArtifacts, load_artifacts
from utils.class_map import BirdClass
from utils.errors import (
    BirdsongError,
    InferenceError,
    LoadInProgressError,
    PreconditionError,
    ResourceUnavailableError,
)
from utils.logging import get_logger

logger = get_logger("inference")

ArtifactLoader = Callable[[Path, torch.device], LoadedArtifacts]

DEMO_FRAMES = 128
DEMO_MELS = 128


class ModelState(str, enum.Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"


@dataclass(frozen=True)
class GeoContext:
    lat: float
    lon: float
    week: int  # 1..48


@dataclass
class PredictionResult:
    bird_id: str
    bird_name: str
    scientific_name: str
    confidence: float
    rank: int


@dataclass
class IdentificationResult:
    success: bool
    predictions: List[PredictionResult] = field(default_factory=list)
    spectrogram: List[List[float]] = field(default_factory=list)
    processing_time_ms: float = 0.0
    error: Optional[str] = None
    demo: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def rank_predictions(probs: Sequence[float], classes: Sequence[BirdClass], top_k: int) -> List[PredictionResult]:
    """
    The ``top_k`` most probable classes, highest first, with 1-based ranks.

    Equal probabilities keep class-index order.
    """
    if top_k < 1:
        raise PreconditionError(f"top_k must be >= 1, got {top_k}")
    probs = np.asarray(probs, dtype=np.float64).reshape(-1)
    if len(probs) != len(classes):
        raise InferenceError(f"Model returned {len(probs)} scores for {len(classes)} classes")
    order = np.argsort(-probs, kind="stable")[:top_k]
    by_index = {c.class_index: c for c in classes}
    results = []
    for rank, idx in enumerate(order, start=1):
        c = by_index[int(idx)]
        results.append(PredictionResult(
            bird_id=c.id,
            bird_name=c.name,
            scientific_name=c.scientific_name,
            confidence=float(probs[idx]),
            rank=rank,
        ))
    return results


def demo_confidences(rng, k: int) -> np.ndarray:
    """Random probabilities summing to 1, strictly descending (ties are redrawn)."""
    while True:
        raw = rng.uniform(0.05, 1.0, size=k)
        confidences = np.sort(raw / raw.sum())[::-1]
        if k == 1 or np.all(np.diff(confidences) < 0):
            return confidences


def create_demo_predictions(
    classes: Sequence[BirdClass],
    top_k: int = 5,
    seed: Optional[int] = None,
) -> IdentificationResult:
    """
    Synthetic result for when no trained model is available.

    Picks ``top_k`` random classes and gives them random confidences that sum
    to 1, strictly descending, together with a synthetic spectrogram (a wavering
    tonal ridge). The result is flagged ``demo=True``. The same ``seed`` gives
    the same output.
    """
    start = time.perf_counter()
    if not classes:
        raise PreconditionError("Demo predictions need at least one class")
    if top_k < 1:
        raise PreconditionError(f"top_k must be >= 1, got {top_k}")
    rng = np.random.default_rng(seed)
    top_k = min(top_k, len(classes))

    picked = [classes[i] for i in rng.permutation(len(classes))[:top_k]]
    confidences = demo_confidences(rng, top_k)
    predictions = [
        PredictionResult(
            bird_id=c.id,
            bird_name=c.name,
            scientific_name=c.scientific_name,
            confidence=float(p),
            rank=rank,
        )
        for rank, (c, p) in enumerate(zip(picked, confidences), start=1)
    ]

    t = np.arange(DEMO_FRAMES)[:, None]
    f = np.arange(DEMO_MELS)[None, :]
    ridge = (np.sin(t * 0.1) * 0.3 + 0.5) * DEMO_MELS
    spectrogram = np.exp(-np.abs(f - ridge) * 0.1) * (0.8 + rng.random((DEMO_FRAMES, DEMO_MELS)) * 0.2)

    return IdentificationResult(
        success=True,
        predictions=predictions,
        spectrogram=spectrogram.tolist(),
        processing_time_ms=(time.perf_counter() - start) * 1000.0,
        demo=True,
    )


class InferenceService:
    """
    Loads the classifier once and serves ranked predictions.

    Args:
        artifacts_dir: Folder holding ``class_map.json`` and ``best_model.pt``
            (plus an optional ``meta_model.pt``).
        device: Torch device for the forward pass (CPU by default).
        fallback_classes: If given, :meth:`identify` answers with
            :func:`create_demo_predictions` over these classes whenever no
            model can be loaded.
        loader: Replaces :func:`utils.checkpoint.load_artifacts`.
        demo_seed: Seed for the demo fallback.
    """

    def __init__(
        self,
        artifacts_dir: Union[str, Path] = "artifacts",
        device: Optional[torch.device] = None,
        fallback_classes: Optional[Sequence[BirdClass]] = None,
        loader: Optional[ArtifactLoader] = None,
        demo_seed: Optional[int] = None,
    ):
        self.artifacts_dir = Path(artifacts_dir)
        self.device = device or torch.device("cpu")
        self.fallback_classes = list(fallback_classes) if fallback_classes else None
        self.demo_seed = demo_seed
        self._loader = loader or load_artifacts
        self._lock = asyncio.Lock()
        self.state = ModelState.UNLOADED
        self.error: Optional[str] = None
        self.load_count = 0
        self._artifacts: Optional[LoadedArtifacts] = None
        self._extractor: Optional[FeatureExtractor] = None

    # ------------ lifecycle ------------

    @property
    def classes(self) -> List[BirdClass]:
        return list(self._artifacts.classes) if self._artifacts is not None else []

    def _outcome(self) -> LoadedArtifacts:
        if self.state is ModelState.LOADED and self._artifacts is not None:
            return self._artifacts
        raise ResourceUnavailableError(self.error or "Model not loaded")

    async def load(self) -> LoadedArtifacts:
        """
        Read labels and weights. Also the way to retry after a failed load.

        If another load is in flight this waits for it and returns its outcome
        instead of starting a second one.
        """
        if self.state is ModelState.LOADING:
            async with self._lock:
                pass
            if self.state in (ModelState.UNLOADED, ModelState.LOADING):
                return await self.load()
            return self._outcome()

        async with self._lock:
            if self.state is ModelState.LOADED:
                return self._outcome()
            self.state = ModelState.LOADING
            self.error = None
            self.load_count += 1
            logger.info(f"Loading model from {self.artifacts_dir}...")
            try:
                artifacts = await asyncio.to_thread(self._loader, self.artifacts_dir, self.device)
                extractor = extractor_for(artifacts.variant, artifacts.model, artifacts.spectrogram_config)
            except Exception as e:
                self.state = ModelState.ERROR
                self.error = str(e) or type(e).__name__
                self._artifacts = None
                self._extractor = None
                logger.error(f"Failed to load model: {self.error}")
                if isinstance(e, ResourceUnavailableError):
                    raise
                raise ResourceUnavailableError(self.error) from e
            except BaseException:
                # abandoned by the caller, the next request loads again
                self.state = ModelState.UNLOADED
                self._artifacts = None
                self._extractor = None
                logger.warning("Model load cancelled")
                raise
            self._artifacts = artifacts
            self._extractor = extractor
            self.state = ModelState.LOADED
            logger.info(f"Model loaded with {len(artifacts.classes)} classes")
            return artifacts

    async def ensure_loaded(self, wait: bool = True) -> LoadedArtifacts:
        """
        Return the loaded artifacts, loading them on first use.

        Raises:
            LoadInProgressError: a load is running and ``wait`` is False.
            ResourceUnavailableError: the last load failed (no automatic retry).
        """
        if self.state is ModelState.LOADED:
            return self._outcome()
        if self.state is ModelState.ERROR:
            raise ResourceUnavailableError(self.error or "Model failed to load")
        if self.state is ModelState.LOADING:
            if not wait:
                raise LoadInProgressError("Model is still loading")
            async with self._lock:
                pass
            if self.state in (ModelState.UNLOADED, ModelState.LOADING):
                return await self.load()
            return self._outcome()
        return await self.load()

    def unload(self) -> None:
        if self.state is ModelState.LOADING:
            raise LoadInProgressError("Cannot unload while a load is in progress")
        self._artifacts = None
        self._extractor = None
        self.state = ModelState.UNLOADED
        self.error = None
        logger.info("Model unloaded")

    def status(self) -> Dict[str, Any]:
        return {
            "loaded": self.state is ModelState.LOADED,
            "num_classes": len(self._artifacts.classes) if self._artifacts is not None else 0,
            "error": self.error,
        }

    # ------------ prediction ------------

    def _run_pipeline(
        self,
        artifacts: LoadedArtifacts,
        extractor: FeatureExtractor,
        audio: np.ndarray,
        sample_rate: int,
        geo: Optional[GeoContext],
    ) -> Tuple[np.ndarray, np.ndarray]:
        features = extractor.extract(audio, sample_rate)
        try:
            with torch.inference_mode():
                logits = artifacts.model(features.inputs.to(self.device))
                probs = torch.softmax(logits, dim=1)[0]
                if artifacts.meta_model is not None and geo is not None:
                    meta_in = MetadataModel.encode(geo.lat, geo.lon, geo.week).to(self.device)
                    probs = probs * artifacts.meta_model(meta_in)[0]
                result = probs.cpu().numpy().astype(np.float64)
        except RuntimeError as e:
            raise InferenceError(f"Forward pass failed: {e}") from e
        return result, features.spectrogram

    async def predict(
        self,
        audio: Sequence[float],
        sample_rate: int,
        top_k: int = 5,
        geo: Optional[GeoContext] = None,
    ) -> Tuple[List[PredictionResult], np.ndarray]:
        """
        Rank classes for one clip.

        Returns:
            (predictions, spectrogram ``[frames, mels]``)

        Raises:
            PreconditionError, ResourceUnavailableError, LoadInProgressError, InferenceError
        """
        if top_k < 1:
            raise PreconditionError(f"top_k must be >= 1, got {top_k}")
        if sample_rate <= 0:
            raise PreconditionError(f"sample_rate must be positive, got {sample_rate}")
        samples = np.asarray(audio, dtype=np.float32).reshape(-1)
        if samples.size == 0:
            raise PreconditionError("Audio is empty")

        artifacts = await self.ensure_loaded()
        extractor = self._extractor
        # numeric work runs off the event loop
        probs, spectrogram = await asyncio.to_thread(
            self._run_pipeline, artifacts, extractor, samples, sample_rate, geo
        )
        return rank_predictions(probs, artifacts.classes, min(top_k, len(artifacts.classes))), spectrogram

    async def identify(
        self,
        raw_samples: Sequence[float],
        sample_rate: int,
        top_k: int = 5,
        geo: Optional[GeoContext] = None,
    ) -> IdentificationResult:
        """
        Never raises: failures come back as ``success=False`` with ``error`` set.

        Without a usable model, and with ``fallback_classes`` configured, the
        demo result is returned instead.
        """
        start = time.perf_counter()
        try:
            predictions, spectrogram = await self.predict(raw_samples, sample_rate, top_k, geo)
        except ResourceUnavailableError as e:
            if self.fallback_classes:
                logger.info(f"No model available ({e}); serving demo predictions")
                return create_demo_predictions(self.fallback_classes, top_k, seed=self.demo_seed)
            return self._failure(start, str(e))
        except BirdsongError as e:
            logger.warning(f"Identification failed: {e}")
            return self._failure(start, str(e))
        except Exception as e:
            logger.error(f"Prediction error: {e}", exc_info=True)
            return self._failure(start, str(e) or "Unknown error")
        return IdentificationResult(
            success=True,
            predictions=predictions,
            spectrogram=spectrogram.tolist(),
            processing_time_ms=(time.perf_counter() - start) * 1000.0,
        )

    @staticmethod
    def _failure(start: float, message: str) -> IdentificationResult:
        return IdentificationResult(
            success=False,
            processing_time_ms=(time.perf_counter() - start) * 1000.0,
            error=message,
        )

    def training_status(self) -> Dict[str, Any]:
        return self.status()
