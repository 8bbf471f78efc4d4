"""Saving and loading the model artifact together with its class map."""
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

import torch
import torch.nn as nn

from models.feature_layers import InGraphBirdModel, MelSpecLayer
from models.metadata import MetadataModel
from utils.class_map import BirdClass, load_class_map, save_class_map
from utils.config import ModelConfig, SpectrogramConfig
from utils.errors import ResourceUnavailableError
from utils.logging import get_logger
from utils.models import build_model

logger = get_logger("checkpoint")

MODEL_FILENAME = "best_model.pt"
META_MODEL_FILENAME = "meta_model.pt"


@dataclass
class LoadedArtifacts:
    model: nn.Module
    classes: List[BirdClass]
    variant: str
    model_config: ModelConfig
    spectrogram_config: SpectrogramConfig
    meta_model: Optional[MetadataModel] = None


def save_model(
    model: nn.Module,
    artifacts_dir: Union[str, Path],
    model_config: ModelConfig,
    spectrogram_config: SpectrogramConfig,
    classes: Optional[List[BirdClass]] = None,
    filename: str = MODEL_FILENAME,
) -> Path:
    """
    Write the weights (and, if given, the class map) to ``artifacts_dir``.

    The weights file is written to a temporary name and renamed into place so
    a reader never sees a half-written checkpoint.
    """
    artifacts_dir = Path(artifacts_dir)
    artifacts_dir.mkdir(parents=True, exist_ok=True)
    bundle = {
        "state_dict": model.state_dict(),
        "model_config": model_config.to_dict(),
        "spectrogram_config": spectrogram_config.to_dict(),
        "variant": "in_graph" if isinstance(model, InGraphBirdModel) else "custom",
    }
    if isinstance(model, InGraphBirdModel):
        layer = model.spec_layer
        bundle["clip_samples"] = model.clip_samples
        bundle["layer_config"] = {
            "sample_rate": layer.sample_rate,
            "n_mels": layer.n_mels,
            "frame_length": layer.frame_length,
            "frame_step": layer.frame_step,
            "fmin": layer.fmin,
            "fmax": layer.fmax,
        }
    if classes is not None:
        save_class_map(artifacts_dir, classes)

    path = artifacts_dir / filename
    tmp = path.with_suffix(path.suffix + ".tmp")
    torch.save(bundle, tmp)
    tmp.replace(path)
    logger.info(f"Saved model to {path}")
    return path


def save_metadata_model(meta_model: MetadataModel, artifacts_dir: Union[str, Path]) -> Path:
    path = Path(artifacts_dir) / META_MODEL_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    torch.save({"state_dict": meta_model.state_dict(), "num_classes": meta_model.num_classes}, path)
    return path


def _read_bundle(path: Path, device: torch.device) -> dict:
    try:
        bundle = torch.load(path, map_location=device, weights_only=True)
    except Exception as e:
        raise ResourceUnavailableError(f"Could not read checkpoint {path}: {e}") from e
    if not isinstance(bundle, dict) or "state_dict" not in bundle:
        raise ResourceUnavailableError(f"Checkpoint {path} has no state_dict")
    return bundle


def _load_metadata_model(artifacts_dir: Path, num_classes: int, device: torch.device) -> Optional[MetadataModel]:
    path = artifacts_dir / META_MODEL_FILENAME
    if not path.exists():
        return None
    # optional: a broken metadata model only disables location weighting
    try:
        bundle = _read_bundle(path, device)
        meta = MetadataModel(int(bundle.get("num_classes", num_classes)))
        meta.load_state_dict(bundle["state_dict"])
    except (ResourceUnavailableError, RuntimeError) as e:
        logger.warning(f"Metadata model not loaded: {e}")
        return None
    if meta.num_classes != num_classes:
        logger.warning(
            f"Metadata model has {meta.num_classes} classes, expected {num_classes}; ignoring it"
        )
        return None
    return meta.to(device).eval()


def load_artifacts(artifacts_dir: Union[str, Path], device: Optional[torch.device] = None) -> LoadedArtifacts:
    """
    Load class map and weights together.

    Raises:
        ResourceUnavailableError: if either file is missing or unreadable, or if
            the class map and the model disagree on the number of classes.
    """
    artifacts_dir = Path(artifacts_dir)
    device = device or torch.device("cpu")
    model_path = artifacts_dir / MODEL_FILENAME
    if not model_path.exists():
        raise ResourceUnavailableError(f"Model weights not found: {model_path}")

    classes = load_class_map(artifacts_dir)
    bundle = _read_bundle(model_path, device)
    try:
        model_config = ModelConfig.from_dict(bundle["model_config"])
        spectrogram_config = SpectrogramConfig.from_dict(bundle.get("spectrogram_config", {}))
        variant = bundle.get("variant", "custom")
    except (KeyError, TypeError) as e:
        raise ResourceUnavailableError(f"Checkpoint {model_path} is missing its config: {e}") from e

    if model_config.num_classes != len(classes):
        raise ResourceUnavailableError(
            f"Class map has {len(classes)} classes but the model outputs {model_config.num_classes}"
        )

    if variant == "in_graph":
        layer = MelSpecLayer(**bundle.get("layer_config", {}))
        model = build_model(model_config, variant="in_graph",
                            clip_samples=bundle.get("clip_samples"), spec_layer=layer)
    else:
        model = build_model(model_config, variant=variant)
    try:
        model.load_state_dict(bundle["state_dict"])
    except RuntimeError as e:
        raise ResourceUnavailableError(f"Weights in {model_path} do not match the architecture: {e}") from e
    model.to(device).eval()

    meta_model = _load_metadata_model(artifacts_dir, len(classes), device)
    logger.info(
        f"Loaded {variant} model from {model_path} with {len(classes)} classes"
        + (" (+ metadata model)" if meta_model is not None else "")
    )
    return LoadedArtifacts(
        model=model,
        classes=classes,
        variant=variant,
        model_config=model_config,
        spectrogram_config=spectrogram_config,
        meta_model=meta_model,
    )
