"""Utility functions for the bird sound classifier."""
from utils.device import get_device, get_device_name
from utils.logging import setup_logging, get_logger
from utils.config import SpectrogramConfig, ModelConfig, TrainingConfig, DEFAULT_CONFIG
from utils.errors import (
    BirdsongError,
    PreconditionError,
    ResourceUnavailableError,
    LoadInProgressError,
    InferenceError,
)
from utils.class_map import load_class_map, save_class_map

__all__ = [
    'get_device', 'get_device_name',
    'setup_logging', 'get_logger',
    'SpectrogramConfig', 'ModelConfig', 'TrainingConfig', 'DEFAULT_CONFIG',
    'BirdsongError', 'PreconditionError', 'ResourceUnavailableError',
    'LoadInProgressError', 'InferenceError',
    'load_class_map', 'save_class_map'
]
