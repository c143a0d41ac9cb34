"""Logging configuration for the NIM proxy service."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

import colorlog

LOGGER_NAME = "nim_proxy"


def setup_logging(
    level_name: str = "INFO",
    log_path: str | None = None,
    use_color: bool = True,
) -> logging.Logger:
    """
    Configure the service logger.

    Without a log path records go to stderr; with one they go to a
    rotating file (1 MB, 3 backups).

    LOG_LEVEL=DISABLE disables logging entirely.
    """
    level_name = (level_name or "INFO").upper().strip()
    logger = logging.getLogger(LOGGER_NAME)

    # Clear existing handlers to avoid duplication
    logger.handlers.clear()

    if level_name == "DISABLE":
        logging.disable(logging.CRITICAL)
        logger.addHandler(logging.NullHandler())
        logger.propagate = False
        return logger

    logging.disable(logging.NOTSET)
    level = getattr(logging, level_name, logging.INFO)
    logger.setLevel(level)

    handler, fallback_err = _create_log_handler(log_path)
    # File output never gets ANSI colors
    handler.setFormatter(_create_log_formatter(use_color and not isinstance(handler, RotatingFileHandler)))

    logger.addHandler(handler)
    if fallback_err is not None:
        logger.warning(
            "Failed to open log file %r (%s). Falling back to stderr logging.",
            log_path,
            fallback_err,
        )
    logger.propagate = False
    return logger


def _create_log_handler(log_path: str | None) -> tuple[logging.Handler, Exception | None]:
    """Create log handler; a file that cannot be opened falls back to StreamHandler."""
    if not log_path:
        return logging.StreamHandler(), None
    try:
        return RotatingFileHandler(
            log_path,
            maxBytes=1_048_576,  # 1 MB
            backupCount=3,
            encoding="utf-8",
        ), None
    except OSError as e:
        return logging.StreamHandler(), e


def _create_log_formatter(use_color: bool) -> logging.Formatter:
    """Create log formatter, colored on request."""
    if use_color:
        return colorlog.ColoredFormatter(
            "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(name)s - %(message)s",
            datefmt=None,
            reset=True,
            log_colors={
                'DEBUG': 'cyan',
                'INFO': 'green',
                'WARNING': 'yellow',
                'ERROR': 'red',
                'CRITICAL': 'red,bg_white',
            },
            secondary_log_colors={},
            style='%'
        )
    return logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")


def mask_secret(s: str, keep_start: int = 6, keep_end: int = 4) -> str:
    """Mask a secret string, keeping only start and end characters."""
    s = (s or "").strip()
    if not s:
        return ""
    if len(s) <= keep_start + keep_end:
        return "*" * len(s)
    return f"{s[:keep_start]}...{s[-keep_end:]}"
