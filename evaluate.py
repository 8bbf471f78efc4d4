#!/usr/bin/env python3
"""
Evaluate a trained bird sound classifier on the held-out test split.

The split is rebuilt with the same per-class ratios and seed as in training,
then accuracy, top-K accuracy, macro/weighted F1 and per-class
precision/recall/F1 are reported.
"""

import argparse
import sys
from pathlib import Path

import numpy as np
import pandas as pd
import torch
from sklearn.metrics import accuracy_score, f1_score

from datasets.birdsong import DataGenerator, index_dataset, stratified_split
from utils.checkpoint import LoadedArtifacts, load_artifacts
from utils.device import get_device, get_device_name
from utils.errors import BirdsongError
from utils.logging import get_logger, setup_logging
from utils.metrics import class_metrics, confusion_matrix, top_k_accuracy

logger = get_logger("evaluate")


def evaluate_model(artifacts: LoadedArtifacts, generator: DataGenerator, device: torch.device, k: int = 3):
    """Evaluate a model and return comprehensive metrics."""
    model = artifacts.model
    model.eval()
    all_probs, all_labels = [], []

    with torch.no_grad():
        for batch in generator:
            probs = torch.softmax(model(batch.features.to(device)), dim=1)
            all_probs.append(probs.cpu().numpy())
            all_labels.append(batch.labels.argmax(dim=1).numpy())

    if not all_probs:
        raise BirdsongError("No test sample could be evaluated")
    probs = np.concatenate(all_probs)
    labels = np.concatenate(all_labels)
    preds = probs.argmax(axis=1)
    n = len(artifacts.classes)

    cm = confusion_matrix(preds, labels, n)
    per_class = class_metrics(cm, [c.name for c in artifacts.classes])
    per_class_metrics = pd.DataFrame({
        'Class': [m.class_name for m in per_class],
        'Precision': [m.precision for m in per_class],
        'Recall': [m.recall for m in per_class],
        'F1': [m.f1 for m in per_class],
        'Support': [m.support for m in per_class],
    })

    return {
        'accuracy': accuracy_score(labels, preds),
        'top_k_accuracy': top_k_accuracy(probs, labels, k=k),
        'macro_f1': f1_score(labels, preds, average='macro', labels=list(range(n)), zero_division=0),
        'weighted_f1': f1_score(labels, preds, average='weighted', labels=list(range(n)), zero_division=0),
        'confusion_matrix': cm,
        'predictions': preds,
        'labels': labels,
        'per_class_metrics': per_class_metrics,
    }


def main():
    parser = argparse.ArgumentParser(description="Evaluate the bird sound classifier on its test split")
    parser.add_argument("--data_root", type=str, required=True,
                        help="Folder with one sub-folder of recordings per species")
    parser.add_argument("--artifacts_dir", type=str, default="artifacts",
                        help="Folder with best_model.pt and class_map.json [default: artifacts]")
    parser.add_argument("--train_ratio", type=float, default=0.7, help="Must match training [default: 0.7]")
    parser.add_argument("--val_ratio", type=float, default=0.15, help="Must match training [default: 0.15]")
    parser.add_argument("--seed", type=int, default=42, help="Must match training [default: 42]")
    parser.add_argument("--batch_size", type=int, default=32, help="Batch size [default: 32]")
    parser.add_argument("--top_k", type=int, default=3, help="K for top-K accuracy [default: 3]")
    parser.add_argument("--output", type=str, default=None,
                        help="Output CSV file for per-class results [default: None]")
    args = parser.parse_args()

    setup_logging()

    device = get_device()
    logger.info(f"Using device: {get_device_name()} ({device})")

    data_root = Path(args.data_root)
    if not data_root.exists():
        logger.error(f"Data root not found: {data_root}")
        sys.exit(1)

    try:
        artifacts = load_artifacts(args.artifacts_dir, device)
    except BirdsongError as e:
        logger.error(f"Could not load model: {e}")
        sys.exit(1)
    if artifacts.variant != "custom":
        logger.error("Only models trained on precomputed spectrograms can be evaluated on a dataset")
        sys.exit(1)

    samples = index_dataset(str(data_root), artifacts.classes)
    split = stratified_split(samples, args.train_ratio, args.val_ratio, seed=args.seed)
    logger.info(f"Test split: {len(split.test)} samples, {len(artifacts.classes)} classes")

    generator = DataGenerator(
        split.test,
        num_classes=len(artifacts.classes),
        batch_size=args.batch_size,
        config=artifacts.spectrogram_config,
        augment=False,
    )

    metrics = evaluate_model(artifacts, generator, device, k=args.top_k)
    logger.info(f"  Accuracy:     {metrics['accuracy']:.4f} ({metrics['accuracy']*100:.2f}%)")
    logger.info(f"  Top-{args.top_k} acc:   {metrics['top_k_accuracy']:.4f}")
    logger.info(f"  Macro F1:     {metrics['macro_f1']:.4f}")
    logger.info(f"  Weighted F1:  {metrics['weighted_f1']:.4f}")
    logger.info("\nPer-class metrics:")
    for _, row in metrics['per_class_metrics'].iterrows():
        logger.info(f"  {row['Class']:24s}: P={row['Precision']:.3f} R={row['Recall']:.3f} F1={row['F1']:.3f}")

    if args.output:
        df = metrics['per_class_metrics'].copy()
        df.loc[len(df)] = ['OVERALL', np.nan, np.nan, metrics['macro_f1'], int(df['Support'].sum())]
        df.to_csv(args.output, index=False)
        logger.info(f"\nDetailed results saved to: {args.output}")


if __name__ == "__main__":
    main()
