"""
Logging configuration for mnemosyne.

Quiet by default; --verbose turns on debug output to stderr.
"""

import logging
import os
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Library loggers that are chatty at INFO
_NOISY_LOGGERS = ("httpx", "httpcore")


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging to suppress verbose library output.

    This silences the per-request INFO lines from httpx/httpcore and
    Python warnings.

    Args:
        quiet: If True, suppress verbose output. If False, show everything.
    """
    if quiet:
        warnings.filterwarnings("ignore")
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
    else:
        warnings.filterwarnings("default")
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.NOTSET)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    logging.getLogger("mnemosyne").setLevel(logging.DEBUG)
    # httpcore traces every socket operation; httpx request lines are enough
    logging.getLogger("httpx").setLevel(logging.DEBUG)
    logging.getLogger("httpcore").setLevel(logging.INFO)


OPS_LOG_FILENAME = "mnemosyne-ops.log"
OPS_LOG_MAX_BYTES = 1_000_000
OPS_LOG_BACKUPS = 3


def configure_ops_log(store_path) -> RotatingFileHandler:
    """Record archive operations (fetches, commits, conflicts) in the store.

    Attaches a rotating handler for {store_path}/mnemosyne-ops.log to the
    "mnemosyne" logger, whatever the console verbosity. Opening the same
    store twice in one process reuses the existing handler.
    """
    log_path = Path(os.path.abspath(Path(store_path) / OPS_LOG_FILENAME))
    app_logger = logging.getLogger("mnemosyne")
    for existing in app_logger.handlers:
        if isinstance(existing, RotatingFileHandler) and existing.baseFilename == str(log_path):
            return existing

    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=OPS_LOG_MAX_BYTES,
        backupCount=OPS_LOG_BACKUPS,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    app_logger.addHandler(handler)
    # INFO must reach the file even when the console is quiet
    if app_logger.level == logging.NOTSET or app_logger.level > logging.INFO:
        app_logger.setLevel(logging.INFO)
    return handler
