"""
Error types and error logging for depot.

Logs full stack traces for debugging while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class DepotError(Exception):
    """Base class for errors surfaced by the registry and directory."""


class NotFound(DepotError):
    """Unknown id, recovery code, or partition key."""


class Forbidden(DepotError):
    """Missing privilege, wrong admin secret, or a self-protection violation."""


class Conflict(DepotError):
    """Duplicate key or recovery code."""


class InvalidRequest(DepotError):
    """Caller context or arguments are incomplete."""


class StorageFailure(DepotError):
    """Underlying registry I/O failed. The original error is chained."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting DEPOT_DATA_DIR."""
    data_dir = os.environ.get("DEPOT_DATA_DIR")
    if data_dir:
        return Path(data_dir) / "depot-errors.log"
    return Path.home() / ".depot" / "depot-errors.log"


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
        pass  # Cannot write the error log; do not crash over it
    return log_path
