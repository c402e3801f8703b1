"""
Logging configuration for brain.

Quiet by default: transport and MCP libraries are noisy at INFO.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

_NOISY_LOGGERS = ("httpx", "httpcore", "mcp", "filelock", "urllib3")

# Config-file level names → stdlib levels
LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def configure_quiet_mode(quiet: bool = True):
    """
    Suppress verbose library output.

    Args:
        quiet: If True, silence library warnings and chatty loggers.
    """
    if quiet:
        warnings.filterwarnings("ignore")
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    for name in ("brain",) + _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG)


def apply_log_level(level: str) -> None:
    """Apply the config-file ``logging.level`` to the brain logger."""
    logging.getLogger("brain").setLevel(LEVELS.get(level, logging.INFO))


def configure_ops_log(state_dir):
    """Configure a persistent operations log.

    Writes to {state_dir}/brain-ops.log using a rotating file handler
    (1MB max, 3 backups). Returns the handler so it can be removed on
    shutdown.
    """
    log_path = Path(state_dir) / "brain-ops.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    brain_logger = logging.getLogger("brain")
    brain_logger.addHandler(handler)
    if brain_logger.level == logging.NOTSET or brain_logger.level > logging.INFO:
        brain_logger.setLevel(logging.INFO)

    return handler
