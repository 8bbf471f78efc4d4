"""Training script for the bird sound classifier."""
import argparse
import json
import logging
import sys
from pathlib import Path

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np

from datasets.birdsong import get_dataset_stats, index_dataset, stratified_split
from utils.class_map import create_class_mapping
from utils.config import ModelConfig, SpectrogramConfig, TrainingConfig
from utils.device import get_device, get_device_name
from utils.errors import BirdsongError
from utils.logging import get_logger, setup_logging
from utils.metrics import class_metrics, confusion_matrix
from utils.training import Trainer

logger = get_logger("train")


def load_bird_list(data_root: Path, classes_file=None):
    """
    Class definitions, in index order.

    Either a JSON list of ``{"id", "name", "scientific_name"}`` objects, or, by
    default, one class per sub-folder of ``data_root`` (sorted by name).
    """
    if classes_file:
        with open(classes_file, "r") as f:
            return json.load(f)
    return [{"id": d.name, "name": d.name} for d in sorted(data_root.iterdir()) if d.is_dir()]


def plot_confusion_matrix(cm: np.ndarray, out_path: str) -> None:
    """
    Plot and save confusion matrix.

    Args:
        cm: Confusion matrix array.
        out_path: Path to save the plot.
    """
    try:
        fig = plt.figure()
        plt.imshow(cm, interpolation='nearest')
        plt.title('Confusion matrix')
        plt.xlabel('Predicted')
        plt.ylabel('True')
        plt.colorbar()
        plt.tight_layout()
        fig.savefig(out_path)
        plt.close(fig)
        logger.debug(f"Saved confusion matrix to {out_path}")
    except Exception as e:
        logger.error(f"Error saving confusion matrix to {out_path}: {e}", exc_info=True)
        raise


def main():
    """
    Main training function.

    Indexes the dataset, splits it per class, trains with early stopping and
    writes the model, class map and test confusion matrix to the artifacts folder.
    """
    setup_logging(level=logging.INFO)

    ap = argparse.ArgumentParser(description="Train the bird sound classifier")
    ap.add_argument("--data_root", type=str, required=True, help="Folder with one sub-folder of recordings per species")
    ap.add_argument("--classes_file", type=str, default=None, help="Optional JSON list of {id, name, scientific_name}")
    ap.add_argument("--artifacts_dir", type=str, default="artifacts", help="Where checkpoints and the class map are written")
    ap.add_argument("--train_ratio", type=float, default=0.7, help="Per-class training fraction")
    ap.add_argument("--val_ratio", type=float, default=0.15, help="Per-class validation fraction (rest is test)")
    ap.add_argument("--batch_size", type=int, default=32, help="Batch size")
    ap.add_argument("--epochs", type=int, default=50, help="Maximum number of epochs")
    ap.add_argument("--lr", type=float, default=1e-3, help="Learning rate")
    ap.add_argument("--dropout", type=float, default=0.3, help="Dropout rate of the dense head")
    ap.add_argument("--patience", type=int, default=5, help="Early stopping patience (epochs)")
    ap.add_argument("--top_k", type=int, default=3, help="K for the reported top-K accuracy")
    ap.add_argument("--no_augment", action="store_true", help="Disable training augmentation")
    ap.add_argument("--seed", type=int, default=42, help="Split / shuffle seed")
    ap.add_argument("--sr", type=int, default=22050, help="Sample rate")
    ap.add_argument("--n_fft", type=int, default=2048, help="FFT size")
    ap.add_argument("--hop_length", type=int, default=512, help="STFT hop length")
    ap.add_argument("--n_mels", type=int, default=128, help="Number of mel bins")
    ap.add_argument("--fmin", type=float, default=0.0, help="Lowest mel frequency (Hz)")
    ap.add_argument("--fmax", type=float, default=None, help="Highest mel frequency (Hz), default sr/2")
    ap.add_argument("--duration", type=float, default=3.0, help="Clip duration in seconds")
    ap.add_argument("--log_file", type=str, default=None, help="Optional log file path")
    args = ap.parse_args()

    if args.log_file:
        setup_logging(level=logging.INFO, log_file=args.log_file)

    logger.info("=" * 60)
    logger.info("Starting training")
    logger.info("=" * 60)

    data_root = Path(args.data_root)
    if not data_root.exists():
        logger.error(f"Data root does not exist: {data_root}")
        sys.exit(1)

    device = get_device()
    logger.info(f"Using device: {get_device_name()} ({device})")

    try:
        spec_config = SpectrogramConfig(
            sample_rate=args.sr,
            fft_size=args.n_fft,
            hop_length=args.hop_length,
            n_mels=args.n_mels,
            f_min=args.fmin,
            f_max=args.fmax if args.fmax is not None else args.sr / 2,
            target_duration=args.duration,
        ).validate()
        classes = create_class_mapping(load_bird_list(data_root, args.classes_file))
        samples = index_dataset(str(data_root), classes)
        split = stratified_split(samples, args.train_ratio, args.val_ratio, seed=args.seed)
    except (BirdsongError, OSError, ValueError) as e:
        logger.error(f"Error preparing dataset: {e}", exc_info=True)
        sys.exit(1)

    stats = get_dataset_stats(split)
    logger.info(
        f"Classes: {len(classes)} | Train items: {stats.train_samples} | "
        f"Val items: {stats.validation_samples} | Test items: {stats.test_samples}"
    )

    training_config = TrainingConfig(
        epochs=args.epochs,
        batch_size=args.batch_size,
        learning_rate=args.lr,
        early_stopping_patience=args.patience,
        checkpoint_dir=Path(args.artifacts_dir),
        top_k=args.top_k,
        augment=not args.no_augment,
        seed=args.seed,
    )
    model_config = ModelConfig.for_classes(len(classes), spec_config, learning_rate=args.lr, dropout_rate=args.dropout)
    logger.info(f"Input shape: [1, {model_config.input_height}, {model_config.input_width}]")

    trainer = Trainer(model_config, training_config, classes, spectrogram_config=spec_config, device=device)
    try:
        history = trainer.fit(split)
    except BirdsongError as e:
        logger.error(f"Training aborted: {e}")
        sys.exit(1)

    if history.test_metrics is not None:
        cm = confusion_matrix(history.test_metrics.predictions, history.test_metrics.targets, len(classes))
        try:
            plot_confusion_matrix(cm, str(training_config.checkpoint_dir / "confusion_matrix_test.png"))
        except Exception as e:
            logger.warning(f"Could not save confusion matrix: {e}")
        for m in class_metrics(cm, [c.name for c in classes]):
            logger.info(f"  {m.class_name:24s} precision={m.precision:.3f} recall={m.recall:.3f} f1={m.f1:.3f}")

    logger.info("=" * 60)
    logger.info(
        f"Training {trainer.state.value}. Best val accuracy: {history.best_val_accuracy:.3f} "
        f"(epoch {history.best_epoch})"
    )
    logger.info("=" * 60)


if __name__ == "__main__":
    main()
