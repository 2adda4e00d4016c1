"""Shared logging helpers for the preview runner."""

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

logger = logging.getLogger("livepreview")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _log_level() -> int:
    raw = str(os.environ.get("LIVEPREVIEW_LOG_LEVEL", "INFO") or "INFO").strip().upper()
    if raw == "DEBUG":
        return logging.DEBUG
    if raw == "WARNING" or raw == "WARN":
        return logging.WARNING
    if raw == "ERROR":
        return logging.ERROR
    return logging.INFO


def log_dir() -> Path:
    return Path(os.environ.get("LIVEPREVIEW_LOG_DIR", tempfile.gettempdir() + "/livepreview-logs"))


def configure_logging(directory: Optional[Path] = None, *, console: bool = True) -> Path:
    """Attach a file handler (and optionally a stream handler) to the package logger.

    Safe to call more than once; handlers are only added when missing.
    """
    target_dir = Path(directory) if directory else log_dir()
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = str(target_dir / "runner.log")

    logger.setLevel(_log_level())
    if not any(
        isinstance(h, logging.FileHandler) and getattr(h, "baseFilename", None) == log_path
        for h in logger.handlers
    ):
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)

    if console and not any(type(h) is logging.StreamHandler for h in logger.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(stream_handler)
    return Path(log_path)


def error_message(error: object) -> str:
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error if error is not None else "unknown")


def warn_non_fatal(context: str, error: object, log: Optional[logging.Logger] = None) -> None:
    """Log a failure that the caller recovers from."""
    (log or logger).warning("%s: %s", context, error_message(error))
