"""Dataset indexing, splitting and batch generation."""
from datasets.birdsong import (
    AudioSample,
    Batch,
    DataGenerator,
    DataSplit,
    get_dataset_stats,
    index_dataset,
    random_split,
    stratified_split,
)

__all__ = [
    'AudioSample', 'Batch', 'DataGenerator', 'DataSplit',
    'get_dataset_stats', 'index_dataset', 'random_split', 'stratified_split',
]
