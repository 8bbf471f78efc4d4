"""Exception types raised by the feature pipeline, trainer and inference service."""


class BirdsongError(Exception):
    """Base class for all errors raised by this project."""


class PreconditionError(BirdsongError, ValueError):
    """The caller broke an input contract (short audio, bad config, bad top_k...)."""


class ResourceUnavailableError(BirdsongError):
    """Model weights or class labels are missing, unreadable or inconsistent."""


class LoadInProgressError(BirdsongError):
    """A model load is already in flight and the caller asked not to wait for it."""


class InferenceError(BirdsongError):
    """The forward pass failed for a reason other than bad input."""
