"""Startup helpers for the NIM proxy service."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from dotenv import load_dotenv

from config import AppConfig
from logger import mask_secret

log = logging.getLogger("nim_proxy")


def load_env_files() -> List[Path]:
    """
    Apply .env files next to the service and in the working directory.

    The working directory file is applied last, so its values win.
    Returns the files that were read.
    """
    loaded: List[Path] = []
    for candidate in dict.fromkeys((Path(__file__).resolve().parent / ".env", Path.cwd() / ".env")):
        if not candidate.is_file():
            log.debug("env file not present: %s", candidate)
            continue
        load_dotenv(dotenv_path=candidate, override=True)
        loaded.append(candidate)
        log.info("env file applied: %s", candidate)
    if not loaded:
        log.info("No .env file found; using process environment only")
    return loaded


def dump_config(config: AppConfig) -> None:
    """Log effective configuration at startup."""
    log.info("=" * 60)
    log.info("NVIDIA NIM PROXY SERVER STARTUP")
    log.info("=" * 60)
    if config.api_key_configured:
        log.info(
            "API_KEY loaded value=%s len=%d",
            mask_secret(config.api_key),
            len(config.api_key.strip()),
        )
    else:
        log.critical("API_KEY environment variable is MISSING; chat requests will fail with 500.")
    log.info("UPSTREAM_URL=%s", config.upstream_url)
    log.info("REQUEST_TIMEOUT_S=%s", config.request_timeout_s)
    log.info("STREAM_FAILURE_MODE=%s", config.stream_failure_mode)
    log.info("DISCONNECT_POLL_S=%s", config.disconnect_poll_s)
    log.info("MAX_REQUEST_BYTES=%s", config.max_request_bytes)
    log.info("THINKING_PREVIEW_CHARS=%s", config.thinking_preview_chars)
    log.info("LOG_LEVEL=%s", config.log_level)
    log.info("LOG_PATH=%s", config.log_path or "<stderr>")
    log.info("USER_AGENT=%s", config.user_agent)
    log.info("WorkingDir=%s", str(Path.cwd()))
    log.info("=" * 60)
