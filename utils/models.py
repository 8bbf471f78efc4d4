"""Model factory and training setup."""
from dataclasses import dataclass, field
from typing import Optional, Tuple

import torch
import torch.nn as nn
import torch.optim as optim

from models.bird_cnn import BirdSoundCNN
from models.feature_layers import VARIANTS, InGraphBirdModel, MelSpecLayer
from utils.config import ModelConfig
from utils.errors import PreconditionError
from utils.logging import get_logger

logger = get_logger("models")

MIN_INPUT_SIZE = 16  # four 2x2 poolings


def build_model(
    config: ModelConfig,
    variant: str = "custom",
    clip_samples: Optional[int] = None,
    spec_layer: Optional[MelSpecLayer] = None,
) -> nn.Module:
    """
    Build an untrained classifier.

    Args:
        config: Shape contract and dropout. For ``in_graph`` only ``num_classes``
            and ``dropout_rate`` are used; the spectrogram size comes from the layer.
        variant: ``"custom"`` (spectrogram input) or ``"in_graph"`` (waveform input).
        clip_samples: Waveform length for the ``in_graph`` variant.
        spec_layer: Optional preconfigured :class:`MelSpecLayer` for ``in_graph``.
    """
    if config.num_classes < 1:
        raise PreconditionError(f"num_classes must be >= 1, got {config.num_classes}")
    if variant == "custom":
        if config.input_height < MIN_INPUT_SIZE or config.input_width < MIN_INPUT_SIZE:
            raise PreconditionError(
                f"Input {config.input_height}x{config.input_width} is too small; "
                f"both sides must be >= {MIN_INPUT_SIZE}"
            )
        return BirdSoundCNN(config)
    if variant == "in_graph":
        kwargs = {"spec_layer": spec_layer, "dropout_rate": config.dropout_rate}
        if clip_samples is not None:
            kwargs["clip_samples"] = clip_samples
        return InGraphBirdModel(config.num_classes, **kwargs)
    raise PreconditionError(f"Unknown model variant {variant!r}, expected one of {VARIANTS}")


@dataclass
class CompiledModel:
    """A model bundled with its optimizer, loss and tracked metric."""
    model: nn.Module
    optimizer: optim.Optimizer
    loss_fn: nn.Module = field(default_factory=nn.CrossEntropyLoss)
    metrics: Tuple[str, ...] = ("accuracy",)

    def train_on_batch(self, xs: torch.Tensor, ys: torch.Tensor) -> Tuple[float, float]:
        """One optimizer step. ``ys`` are one-hot targets. Returns (loss, accuracy)."""
        self.model.train()
        logits = self.model(xs)
        loss = self.loss_fn(logits, ys)
        self.optimizer.zero_grad()
        loss.backward()
        self.optimizer.step()
        acc = (logits.argmax(dim=1) == ys.argmax(dim=1)).float().mean().item()
        return loss.item(), acc

    @torch.no_grad()
    def test_on_batch(self, xs: torch.Tensor, ys: torch.Tensor) -> Tuple[float, float, torch.Tensor]:
        """Returns (loss, accuracy, softmax probabilities) without updating weights."""
        self.model.eval()
        logits = self.model(xs)
        loss = self.loss_fn(logits, ys).item()
        probs = torch.softmax(logits, dim=1)
        acc = (probs.argmax(dim=1) == ys.argmax(dim=1)).float().mean().item()
        return loss, acc, probs


def compile_model(model: nn.Module, learning_rate: float) -> CompiledModel:
    """Adam at ``learning_rate``, categorical cross-entropy on one-hot targets, accuracy metric."""
    if learning_rate <= 0:
        raise PreconditionError(f"learning_rate must be positive, got {learning_rate}")
    optimizer = optim.Adam(model.parameters(), lr=learning_rate)
    logger.debug(f"Compiled {type(model).__name__} with Adam(lr={learning_rate})")
    return CompiledModel(model=model, optimizer=optimizer)


def count_parameters(model: nn.Module) -> int:
    return sum(p.numel() for p in model.parameters())


def model_summary(model: nn.Module) -> str:
    lines = [f"{type(model).__name__}"]
    for name, module in model.named_children():
        n = sum(p.numel() for p in module.parameters())
        lines.append(f"  {name:<14} {type(module).__name__:<24} {n:>10,}")
    lines.append(f"  Total params: {count_parameters(model):,}")
    return "\n".join(lines)
