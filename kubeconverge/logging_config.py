"""Logging setup shared by the CLI, the reconciler and its worker threads."""

import logging
import sys
from pathlib import Path

from kubeconverge.exceptions import ConfigurationError

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
# Tier groups run on pool threads, so file logs carry the thread name
FILE_LOG_FORMAT = "%(asctime)s - %(threadName)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

QUIET_LIBRARIES = {
    "urllib3": logging.WARNING,
    "kubernetes": logging.WARNING,
    "ansible_runner": logging.INFO,
    "tenacity": logging.WARNING,
}


def _parse_level(level: str) -> int:
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ConfigurationError(
            f"Unknown log level '{level}'", "Use DEBUG, INFO, WARNING, ERROR or CRITICAL"
        )
    return value


def setup_logging(level: str = "INFO", log_file: Path | None = None, verbose: bool = False) -> None:
    """Configure the root logger.

    The console handler writes to stderr and only shows warnings unless
    ``verbose`` is set, so it does not interleave with the rich report on
    stdout. A log file, when given, always receives DEBUG records.

    Args:
        level: Root logging level name
        log_file: Optional path to a log file; parent directories are created
        verbose: Log everything at DEBUG, on the console too

    Raises:
        ConfigurationError: If ``level`` is not a logging level name
    """
    root_level = logging.DEBUG if verbose else _parse_level(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
        except OSError as e:
            logging.warning(f"Cannot write log file {log_file}: {e}")
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT, datefmt=DATE_FORMAT))
            root_logger.addHandler(file_handler)

    for name, library_level in QUIET_LIBRARIES.items():
        logging.getLogger(name).setLevel(library_level)


def get_logger(name: str) -> logging.Logger:
    """Return the module logger for ``name`` (usually ``__name__``)."""
    return logging.getLogger(name)
