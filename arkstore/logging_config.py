"""
Logging configuration for ark.

Quiet by default for better CLI output; every store also keeps a small
rotating operations log in its .ark folder.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

OPS_LOG_FILENAME = "ark-ops.log"


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging to suppress verbose output.

    Args:
        quiet: If True, suppress warnings and chatty loggers. If False, show everything.
    """
    if quiet:
        warnings.filterwarnings("ignore")
        logging.getLogger("arkstore").setLevel(logging.WARNING)
    else:
        warnings.filterwarnings("default")
        logging.getLogger("arkstore").setLevel(logging.NOTSET)


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

    logging.getLogger("arkstore").setLevel(logging.DEBUG)


def configure_ops_log(ark_dir) -> logging.Handler:
    """Configure a persistent operations log for a store.

    Writes to {ark_dir}/ark-ops.log using a rotating file handler
    (1MB max, 3 backups). Always active regardless of --verbose.
    Returns the handler so it can be removed on close().
    """
    log_path = Path(ark_dir) / OPS_LOG_FILENAME
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    ark_logger = logging.getLogger("arkstore")
    ark_logger.addHandler(handler)
    # Ensure ark logger allows INFO through even in quiet mode
    if ark_logger.level == logging.NOTSET or ark_logger.level > logging.INFO:
        ark_logger.setLevel(logging.INFO)

    return handler


def remove_ops_log(handler: logging.Handler) -> None:
    """Detach and close a handler returned by configure_ops_log()."""
    logging.getLogger("arkstore").removeHandler(handler)
    handler.close()
