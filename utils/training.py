"""Training loop: epochs, validation, early stopping and checkpointing."""
from __future__ import annotations

import asyncio
import copy
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence

import numpy as np
import torch
import torch.nn as nn

from datasets.birdsong import AudioLoader, DataGenerator, DataSplit
from utils.checkpoint import save_model
from utils.class_map import BirdClass, save_class_map
from utils.config import DEFAULT_CONFIG, ModelConfig, SpectrogramConfig, TrainingConfig
from utils.errors import PreconditionError
from utils.logging import get_logger
from utils.metrics import class_metrics, confusion_matrix, top_k_accuracy
from utils.models import build_model, compile_model, model_summary

logger = get_logger("training")


class TrainingState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    EARLY_STOPPED = "early_stopped"
    FAILED = "failed"


@dataclass
class EvaluationResult:
    loss: float
    accuracy: float
    top_k_accuracy: float
    predictions: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    targets: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))


@dataclass
class EpochMetrics:
    epoch: int
    train_loss: float
    train_accuracy: float
    val_loss: float
    val_accuracy: float
    val_top_k_accuracy: float
    duration: float


@dataclass
class TrainingHistory:
    epochs: List[EpochMetrics] = field(default_factory=list)
    best_epoch: int = 0
    best_val_accuracy: float = 0.0
    stopped_early: bool = False
    test_metrics: Optional[EvaluationResult] = None


class EarlyStopping:
    """
    Stop once the monitored value has failed to improve more than ``patience``
    times in a row: ``patience`` stalled epochs are tolerated and the next
    stalled one ends training.

    A deep copy of the model weights is kept for the best value seen so far and
    can be put back with :meth:`restore_best_weights`.
    """

    def __init__(self, patience: int):
        if patience <= 0:
            raise PreconditionError(f"patience must be positive, got {patience}")
        self.patience = patience
        self.best_value = -float("inf")
        self.counter = 0
        self.best_weights: Optional[Dict[str, torch.Tensor]] = None

    def check(self, model: nn.Module, value: float) -> bool:
        """Record ``value``; return True when training should stop."""
        if value > self.best_value:
            self.best_value = value
            self.counter = 0
            self.best_weights = copy.deepcopy(model.state_dict())
            return False
        self.counter += 1
        return self.counter > self.patience

    def restore_best_weights(self, model: nn.Module) -> bool:
        if self.best_weights is None:
            return False
        model.load_state_dict(self.best_weights)
        return True

    def reset(self) -> None:
        self.best_value = -float("inf")
        self.counter = 0
        self.best_weights = None


class Trainer:
    """
    Fits a classifier on a :class:`DataSplit`.

    State moves ``idle -> running -> completed | early_stopped | failed``.
    Every new best validation accuracy is checkpointed to
    ``training_config.checkpoint_dir``; after the last epoch the best weights
    are restored, the test split is evaluated and the final model is saved.
    """

    def __init__(
        self,
        model_config: ModelConfig,
        training_config: TrainingConfig,
        classes: Sequence[BirdClass],
        spectrogram_config: SpectrogramConfig = DEFAULT_CONFIG,
        model: Optional[nn.Module] = None,
        loader: Optional[AudioLoader] = None,
        device: Optional[torch.device] = None,
    ):
        if len(classes) != model_config.num_classes:
            raise PreconditionError(
                f"{len(classes)} classes given but the model is configured for {model_config.num_classes}"
            )
        self.model_config = model_config
        self.config = training_config
        self.classes = list(classes)
        self.spectrogram_config = spectrogram_config
        self.device = device or torch.device("cpu")
        self.model = (model or build_model(model_config)).to(self.device)
        self.compiled = compile_model(self.model, training_config.learning_rate)
        self.loader = loader
        self.state = TrainingState.IDLE
        self.error: Optional[str] = None
        self.history = TrainingHistory()
        self._file_handler: Optional[logging.Handler] = None

    # ------------ generators ------------

    def _generator(self, samples, augment: bool, seed_offset: int = 0) -> DataGenerator:
        return DataGenerator(
            samples,
            num_classes=self.model_config.num_classes,
            batch_size=self.config.batch_size,
            config=self.spectrogram_config,
            augment=augment,
            augment_probability=self.config.augment_probability,
            seed=self.config.seed + seed_offset,
            loader=self.loader,
        )

    # ------------ epoch steps ------------

    def train_epoch(self, generator: DataGenerator) -> Dict[str, float]:
        """One pass over ``generator``; returns the mean per-batch loss and accuracy."""
        generator.reset()
        total_loss, total_acc, num_batches = 0.0, 0.0, 0
        for batch in generator:
            xs = batch.features.to(self.device)
            ys = batch.labels.to(self.device)
            loss, acc = self.compiled.train_on_batch(xs, ys)
            total_loss += loss
            total_acc += acc
            num_batches += 1
            del xs, ys, batch
            if num_batches % 10 == 0:
                logger.debug(f"  Batch {num_batches}/{len(generator)}, Loss: {loss:.4f}")
        if num_batches == 0:
            return {"loss": 0.0, "accuracy": 0.0}
        return {"loss": total_loss / num_batches, "accuracy": total_acc / num_batches}

    def evaluate(self, generator: DataGenerator, k: Optional[int] = None) -> EvaluationResult:
        """Loss/accuracy averaged per batch plus top-k accuracy over all examples."""
        k = k or self.config.top_k
        generator.reset()
        total_loss, total_acc, num_batches = 0.0, 0.0, 0
        all_probs: List[np.ndarray] = []
        all_targets: List[np.ndarray] = []
        for batch in generator:
            xs = batch.features.to(self.device)
            ys = batch.labels.to(self.device)
            loss, acc, probs = self.compiled.test_on_batch(xs, ys)
            total_loss += loss
            total_acc += acc
            num_batches += 1
            all_probs.append(probs.cpu().numpy())
            all_targets.append(ys.argmax(dim=1).cpu().numpy())
            del xs, ys, probs, batch
        if num_batches == 0:
            return EvaluationResult(loss=0.0, accuracy=0.0, top_k_accuracy=0.0)
        probs = np.concatenate(all_probs)
        targets = np.concatenate(all_targets)
        return EvaluationResult(
            loss=total_loss / num_batches,
            accuracy=total_acc / num_batches,
            top_k_accuracy=top_k_accuracy(probs, targets, k=k),
            predictions=probs.argmax(axis=1),
            targets=targets,
        )

    # ------------ main loop ------------

    def _checkpoint(self) -> None:
        save_model(self.model, self.config.checkpoint_dir, self.model_config, self.spectrogram_config)

    def _attach_log_file(self) -> None:
        if self.config.log_path is None:
            return
        self.config.log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(self.config.log_path)
        handler.setFormatter(logging.Formatter("[%(asctime)s] %(message)s"))
        logger.addHandler(handler)
        self._file_handler = handler

    def _detach_log_file(self) -> None:
        if self._file_handler is not None:
            logger.removeHandler(self._file_handler)
            self._file_handler.close()
            self._file_handler = None

    def _run_epochs(self, split: DataSplit) -> Iterator[EpochMetrics]:
        """Yields after each epoch; callers decide how to wait between epochs."""
        if self.state is TrainingState.RUNNING:
            raise PreconditionError("Training is already running")
        if not split.train or not split.validation:
            raise PreconditionError("Training and validation splits must not be empty")

        self.state = TrainingState.RUNNING
        self.error = None
        self.history = TrainingHistory()
        self._attach_log_file()
        try:
            train_gen = self._generator(split.train, augment=self.config.augment)
            val_gen = self._generator(split.validation, augment=False, seed_offset=1)
            early_stopping = EarlyStopping(self.config.early_stopping_patience)

            logger.info(f"Training started ({len(self.classes)} classes)")
            logger.info(model_summary(self.model))
            logger.info(f"Training with {len(split.train)} samples")
            logger.info(f"Validation with {len(split.validation)} samples")
            logger.info(f"Test with {len(split.test)} samples")
            save_class_map(self.config.checkpoint_dir, self.classes)

            for epoch in range(1, self.config.epochs + 1):
                start = time.time()
                train_metrics = self.train_epoch(train_gen)
                val = self.evaluate(val_gen)
                metrics = EpochMetrics(
                    epoch=epoch,
                    train_loss=train_metrics["loss"],
                    train_accuracy=train_metrics["accuracy"],
                    val_loss=val.loss,
                    val_accuracy=val.accuracy,
                    val_top_k_accuracy=val.top_k_accuracy,
                    duration=time.time() - start,
                )
                self.history.epochs.append(metrics)
                logger.info(
                    f"Epoch {epoch}: train_loss={metrics.train_loss:.4f}, "
                    f"train_acc={metrics.train_accuracy:.4f}, val_loss={metrics.val_loss:.4f}, "
                    f"val_acc={metrics.val_accuracy:.4f}, val_top{self.config.top_k}_acc={metrics.val_top_k_accuracy:.4f}, "
                    f"duration={metrics.duration:.2f}s"
                )

                if epoch == 1 or val.accuracy > self.history.best_val_accuracy:
                    self.history.best_val_accuracy = val.accuracy
                    self.history.best_epoch = epoch
                    self._checkpoint()
                    logger.info(f"New best model saved at epoch {epoch}")

                stop = early_stopping.check(self.model, val.accuracy)
                yield metrics
                if stop:
                    logger.info(f"Early stopping triggered at epoch {epoch}")
                    self.history.stopped_early = True
                    break

            early_stopping.restore_best_weights(self.model)

            if split.test:
                logger.info("Evaluating on test set...")
                test = self.evaluate(self._generator(split.test, augment=False, seed_offset=2))
                self.history.test_metrics = test
                logger.info(
                    f"Test Results: loss={test.loss:.4f}, accuracy={test.accuracy:.4f}, "
                    f"top{self.config.top_k}_accuracy={test.top_k_accuracy:.4f}"
                )
                cm = confusion_matrix(test.predictions, test.targets, len(self.classes))
                for m in class_metrics(cm, [c.name for c in self.classes]):
                    logger.debug(f"  {m.class_name:20s} P={m.precision:.3f} R={m.recall:.3f} F1={m.f1:.3f}")

            self._checkpoint()
            self.state = TrainingState.EARLY_STOPPED if self.history.stopped_early else TrainingState.COMPLETED
            logger.info(
                f"Training {self.state.value}. Best val_acc={self.history.best_val_accuracy:.4f} "
                f"at epoch {self.history.best_epoch}"
            )
        except Exception as e:
            self.state = TrainingState.FAILED
            self.error = str(e)
            logger.error(f"Training failed: {e}", exc_info=True)
            raise
        except BaseException:
            self.state = TrainingState.FAILED
            self.error = "cancelled"
            logger.warning("Training cancelled")
            raise
        finally:
            self._detach_log_file()

    def fit(self, split: DataSplit) -> TrainingHistory:
        epochs = self._run_epochs(split)
        try:
            for _ in epochs:
                pass
        finally:
            epochs.close()
        return self.history

    async def fit_async(self, split: DataSplit) -> TrainingHistory:
        """Same as :meth:`fit` but hands control back to the event loop after every epoch."""
        epochs = self._run_epochs(split)
        try:
            for _ in epochs:
                await asyncio.sleep(0)
        finally:
            # a cancelled task leaves the generator suspended mid-epoch
            epochs.close()
        return self.history
