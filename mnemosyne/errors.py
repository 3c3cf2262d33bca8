"""
Errors raised by the archive, and error logging for the CLI.

Logs full stack traces for debugging while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class ArchiveError(Exception):
    """Base class for archive storage errors."""


class NotInitializedError(ArchiveError):
    """A storage operation was attempted before initialization succeeded."""


class RemoteUnavailableError(ArchiveError):
    """The remote store could not be reached, or refused our credentials."""


class ConflictError(ArchiveError):
    """The version token is stale or absent; re-fetch before retrying."""


class NotFoundError(ArchiveError):
    """The remote object (or its version token) does not exist."""


class ItemParseError(ArchiveError, ValueError):
    """A stored item could not be parsed."""


class AssetDeletionError(ArchiveError):
    """Deleting an item's asset failed. Always logged and swallowed."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting MNEMOSYNE_STORE_PATH."""
    store = os.environ.get("MNEMOSYNE_STORE_PATH")
    if store:
        return Path(store) / "mnemosyne-errors.log"
    return Path.home() / ".mnemosyne" / "mnemosyne-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
