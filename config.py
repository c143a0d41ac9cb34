"""Configuration management for the NIM proxy service."""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_UPSTREAM_URL = "https://integrate.api.nvidia.com/v1/chat/completions"

STREAM_FAILURE_MODES = ("close", "done", "error")


def _env_bool(name: str, default: bool) -> bool:
    """Get boolean environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    """Get float environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    """Get integer environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    """Get string environment variable with fallback."""
    v = os.getenv(name)
    if v is None:
        return default
    return v


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # Upstream settings
    api_key: str
    upstream_url: str
    user_agent: str

    # Timeouts and limits
    request_timeout_s: float
    disconnect_poll_s: float
    max_request_bytes: int

    # Streaming behaviour
    # What to append when the upstream stream breaks after headers were sent:
    # "close" ends silently, "done" appends [DONE], "error" appends an error frame + [DONE]
    stream_failure_mode: str
    thinking_preview_chars: int

    # Server settings
    host: str
    port: int
    log_level: str
    log_path: str
    log_color: bool

    @property
    def api_key_configured(self) -> bool:
        return bool(self.api_key.strip())

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables."""
        return cls(
            api_key=os.getenv("API_KEY", ""),
            upstream_url=_env_str("UPSTREAM_URL", DEFAULT_UPSTREAM_URL),
            user_agent=_env_str("USER_AGENT", "nim-proxy/1.0.0"),
            request_timeout_s=_env_float("REQUEST_TIMEOUT_S", 120.0),
            disconnect_poll_s=_env_float("DISCONNECT_POLL_S", 1.0),
            max_request_bytes=_env_int("MAX_REQUEST_BYTES", 50 * 1024 * 1024),  # 50MB
            stream_failure_mode=_env_str("STREAM_FAILURE_MODE", "close").strip().lower(),
            thinking_preview_chars=_env_int("THINKING_PREVIEW_CHARS", 100),
            host=_env_str("HOST", "0.0.0.0"),
            port=_env_int("PORT", 7860),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper().strip(),
            log_path=_env_str("LOG_PATH", ""),
            log_color=_env_bool("LOG_COLOR", True),
        )

    def validate(self, require_api_key: bool = True) -> None:
        """Validate configuration."""
        if require_api_key and not self.api_key_configured:
            raise ValueError("API_KEY is required")
        if not self.upstream_url.startswith(("http://", "https://")):
            raise ValueError("UPSTREAM_URL must be an http(s) URL")
        if self.request_timeout_s <= 0:
            raise ValueError("REQUEST_TIMEOUT_S must be > 0")
        if self.disconnect_poll_s <= 0:
            raise ValueError("DISCONNECT_POLL_S must be > 0")
        if self.max_request_bytes <= 0:
            raise ValueError("MAX_REQUEST_BYTES must be > 0")
        if self.stream_failure_mode not in STREAM_FAILURE_MODES:
            raise ValueError(
                f"STREAM_FAILURE_MODE must be one of {', '.join(STREAM_FAILURE_MODES)}"
            )
        if self.thinking_preview_chars < 0:
            raise ValueError("THINKING_PREVIEW_CHARS must be >= 0")
        if not 0 < self.port < 65536:
            raise ValueError("PORT must be in 1..65535")
        if not self.user_agent:
            raise ValueError("USER_AGENT must be non-empty")


def load_config() -> AppConfig:
    """Load configuration from environment."""
    return AppConfig.from_env()
