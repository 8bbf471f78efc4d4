"""Classification metrics for training reports and evaluation."""
from dataclasses import dataclass
from typing import List, Sequence

import numpy as np
from sklearn.metrics import confusion_matrix as sk_confusion_matrix
from sklearn.metrics import precision_recall_fscore_support

from utils.errors import PreconditionError


@dataclass
class ClassMetrics:
    class_name: str
    precision: float
    recall: float
    f1: float
    support: int


def top_k_accuracy(probs: np.ndarray, targets: Sequence[int], k: int = 3) -> float:
    """
    Fraction of rows whose true class is among the ``k`` highest probabilities.

    Args:
        probs: ``[N, C]`` class scores.
        targets: ``N`` true class indices (or ``[N, C]`` one-hot rows).
    """
    probs = np.asarray(probs)
    targets = np.asarray(targets)
    if targets.ndim == 2:
        targets = targets.argmax(axis=1)
    if probs.ndim != 2 or len(probs) != len(targets):
        raise PreconditionError(f"Shape mismatch: probs {probs.shape}, targets {targets.shape}")
    if len(probs) == 0:
        return 0.0
    if k <= 0:
        raise PreconditionError(f"k must be positive, got {k}")
    # stable sort so equal scores keep index order
    top = np.argsort(-probs, axis=1, kind="stable")[:, :k]
    return float(np.mean([t in row for t, row in zip(targets, top)]))


def confusion_matrix(predictions: Sequence[int], targets: Sequence[int], num_classes: int) -> np.ndarray:
    """``cm[true, predicted]`` counts over ``num_classes`` classes."""
    return sk_confusion_matrix(targets, predictions, labels=list(range(num_classes)))


def class_metrics(cm: np.ndarray, class_names: Sequence[str]) -> List[ClassMetrics]:
    """Per-class precision / recall / F1 from a confusion matrix (0 where undefined)."""
    cm = np.asarray(cm)
    n = cm.shape[0]
    if cm.sum() == 0:
        return [
            ClassMetrics(class_names[i] if i < len(class_names) else f"Class {i}", 0.0, 0.0, 0.0, 0)
            for i in range(n)
        ]
    # expand the matrix back into (true, pred) pairs so sklearn does the bookkeeping
    y_true = np.repeat(np.repeat(np.arange(n), n), cm.reshape(-1))
    y_pred = np.repeat(np.tile(np.arange(n), n), cm.reshape(-1))
    precision, recall, f1, support = precision_recall_fscore_support(
        y_true, y_pred, labels=list(range(n)), zero_division=0
    )
    return [
        ClassMetrics(
            class_name=class_names[i] if i < len(class_names) else f"Class {i}",
            precision=float(precision[i]),
            recall=float(recall[i]),
            f1=float(f1[i]),
            support=int(support[i]),
        )
        for i in range(n)
    ]
