"""Logging setup shared by the training, evaluation and inference entry points."""
import logging
import sys
from pathlib import Path
from typing import Optional, Union

ROOT_LOGGER_NAME = "birdsong"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: int = logging.INFO, log_file: Optional[Union[str, Path]] = None) -> logging.Logger:
    """
    Configure the project logger.

    Safe to call more than once: the console handler is only attached the first
    time, and a file handler is added for every distinct ``log_file``.

    Args:
        level: Logging level for the project logger.
        log_file: Optional path of a file that should receive a copy of the log.

    Returns:
        The configured project logger.
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in logger.handlers
    )
    if not has_console:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        logger.addHandler(console)

    if log_file is not None:
        log_path = Path(log_file).resolve()
        already = any(
            isinstance(h, logging.FileHandler) and Path(h.baseFilename) == log_path
            for h in logger.handlers
        )
        if not already:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    for handler in logger.handlers:
        handler.setLevel(level)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a child of the project logger, e.g. ``birdsong.train``."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
