"""Tests for configuration loading, counters and logging helpers."""

import logging
import os
import re
from dataclasses import replace
from unittest.mock import patch

import pytest

from config import DEFAULT_UPSTREAM_URL, AppConfig
from logger import mask_secret, setup_logging
from models import ProxyStats, RequestContext, new_request_id
from utils import load_env_files


# ============================================================================
# Config Tests
# ============================================================================

class TestConfig:
    """Test configuration management."""

    def test_from_env_defaults(self):
        """Test loading config with default values."""
        with patch.dict(os.environ, {}, clear=True):
            cfg = AppConfig.from_env()
            assert cfg.api_key == ""
            assert cfg.api_key_configured is False
            assert cfg.upstream_url == DEFAULT_UPSTREAM_URL
            assert cfg.request_timeout_s == 120.0
            assert cfg.port == 7860
            assert cfg.host == "0.0.0.0"
            assert cfg.stream_failure_mode == "close"
            assert cfg.max_request_bytes == 50 * 1024 * 1024
            assert cfg.log_path == ""

    def test_from_env_custom_values(self):
        """Test loading config with custom environment values."""
        env_vars = {
            "API_KEY": "nvapi-custom",
            "UPSTREAM_URL": "http://localhost:9000/v1/chat/completions",
            "REQUEST_TIMEOUT_S": "30",
            "PORT": "9000",
            "STREAM_FAILURE_MODE": " Error ",
            "LOG_LEVEL": "debug",
            "LOG_COLOR": "no",
        }
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = AppConfig.from_env()
            assert cfg.api_key_configured is True
            assert cfg.upstream_url == "http://localhost:9000/v1/chat/completions"
            assert cfg.request_timeout_s == 30.0
            assert cfg.port == 9000
            assert cfg.stream_failure_mode == "error"
            assert cfg.log_level == "DEBUG"
            assert cfg.log_color is False

    def test_bad_numbers_fall_back_to_defaults(self):
        with patch.dict(os.environ, {"REQUEST_TIMEOUT_S": "soon", "PORT": "x"}, clear=True):
            cfg = AppConfig.from_env()
            assert cfg.request_timeout_s == 120.0
            assert cfg.port == 7860

    def test_whitespace_key_is_not_configured(self, test_config):
        assert replace(test_config, api_key="   ").api_key_configured is False

    def test_validate_success(self, test_config):
        """Test successful config validation."""
        test_config.validate()  # Should not raise

    def test_validate_missing_api_key(self, test_config):
        cfg = replace(test_config, api_key="")
        with pytest.raises(ValueError, match="API_KEY"):
            cfg.validate()
        cfg.validate(require_api_key=False)

    @pytest.mark.parametrize(
        "overrides, match",
        [
            ({"request_timeout_s": 0}, "REQUEST_TIMEOUT_S"),
            ({"stream_failure_mode": "retry"}, "STREAM_FAILURE_MODE"),
            ({"upstream_url": "ftp://x"}, "UPSTREAM_URL"),
            ({"max_request_bytes": 0}, "MAX_REQUEST_BYTES"),
            ({"disconnect_poll_s": 0}, "DISCONNECT_POLL_S"),
            ({"port": 0}, "PORT"),
        ],
    )
    def test_validate_rejects(self, test_config, overrides, match):
        with pytest.raises(ValueError, match=match):
            replace(test_config, **overrides).validate()


# ============================================================================
# Model Tests
# ============================================================================

class TestRequestContext:

    def test_from_body(self):
        ctx = RequestContext.from_body(
            {"model": "m", "messages": [{}, {}], "stream": True}, client_ip="10.0.0.1"
        )
        assert ctx.model == "m"
        assert ctx.message_count == 2
        assert ctx.stream is True
        assert ctx.client_ip == "10.0.0.1"

    def test_from_body_defaults(self):
        ctx = RequestContext.from_body({"messages": "nope", "stream": 1})
        assert ctx.model == "unspecified"
        assert ctx.message_count == 0
        assert ctx.stream is False

    def test_request_id_format(self):
        assert re.fullmatch(r"req_\d{13}_[a-z0-9]{9}", new_request_id())


class TestProxyStats:

    def test_counters(self):
        stats = ProxyStats()
        stats.record_request(stream=True)
        stats.record_request(stream=False)
        stats.record_thinking()
        stats.record_error()
        assert stats.snapshot() == {
            "totalRequests": 2,
            "streamingRequests": 1,
            "thinkingDetected": 1,
            "errors": 1,
        }


# ============================================================================
# Logger Tests
# ============================================================================

class TestLogger:

    def test_mask_secret(self):
        assert mask_secret("") == ""
        assert mask_secret("short") == "*****"
        assert mask_secret("nvapi-1234567890abcdef") == "nvapi-...cdef"

    def test_setup_logging_console(self):
        logger = setup_logging("WARNING", log_path="", use_color=False)
        assert logger.level == logging.WARNING
        assert len(logger.handlers) == 1
        assert logger.propagate is False

    def test_setup_logging_file(self, tmp_path):
        path = tmp_path / "proxy.log"
        logger = setup_logging("INFO", log_path=str(path), use_color=True)
        logger.info("hello file")
        for h in logger.handlers:
            h.flush()
        assert "hello file" in path.read_text(encoding="utf-8")
        # restore console logging for the remaining tests
        setup_logging("DEBUG", log_path="", use_color=False)

    def test_setup_logging_unwritable_path_falls_back(self, tmp_path):
        logger = setup_logging("INFO", log_path=str(tmp_path / "missing" / "x.log"), use_color=False)
        assert type(logger.handlers[0]) is logging.StreamHandler
        setup_logging("DEBUG", log_path="", use_color=False)


class TestEnvFiles:

    def test_working_directory_env_file_applied(self, tmp_path, monkeypatch):
        monkeypatch.setenv("NIM_PROXY_EXTRA", "from-process")
        (tmp_path / ".env").write_text("NIM_PROXY_EXTRA=from-file\n", encoding="utf-8")
        monkeypatch.chdir(tmp_path)

        loaded = load_env_files()

        assert (tmp_path / ".env").resolve() in [p.resolve() for p in loaded]
        assert os.environ["NIM_PROXY_EXTRA"] == "from-file"

    def test_no_env_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert (tmp_path / ".env").resolve() not in [p.resolve() for p in load_env_files()]
