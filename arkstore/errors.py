"""
Error kinds for the ark store, and error logging for the CLI.

Every failure the core can report is one of the ArkError subclasses below,
so adapters can map them to exit codes without inspecting messages.
Unexpected exceptions are logged with a full traceback while the user sees
a short message.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class ArkError(Exception):
    """Base class for all store errors."""
    exit_code = 1


class NotFound(ArkError, LookupError):
    """A resource, or the attribute history asked for, does not exist."""
    exit_code = 2


class AlreadyExists(ArkError):
    """A resource with the same derived id has already been created."""
    exit_code = 3


class InvalidPayload(ArkError, ValueError):
    """A payload does not have the shape its attribute kind requires."""
    exit_code = 4


class Locked(ArkError, TimeoutError):
    """The history lock could not be acquired before the timeout."""
    exit_code = 5


class CorruptRecord(ArkError):
    """A persisted record could not be parsed."""
    exit_code = 6

    def __init__(self, path: Path, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Corrupt record {self.path}: {reason}")


def _error_log_path(root: Optional[Path] = None) -> Path:
    """Resolve error log path, respecting ARK_ROOT."""
    if root is None:
        env_root = os.environ.get("ARK_ROOT")
        root = Path(env_root) if env_root else Path.home()
    return Path(root) / ".ark" / "ark-errors.log"


def log_exception(exc: Exception, context: str = "", root: Optional[Path] = None) -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)
        root: Store root whose .ark folder receives the log

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path(root)
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
        pass  # Can't write error log, don't crash over it
    return log_path
