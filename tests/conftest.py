"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- Test environment setup (the service module loads config at import time)
- A fake upstream byte stream for httpx.MockTransport
- Config / app / client factories
"""

import asyncio
import json
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Callable, List, Optional

import httpx
import pytest

# Add parent directory to Python path so tests can import project modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Ensure test environment variables are set early enough (during test collection),
# because the app loads config at import time.
os.environ.setdefault("API_KEY", "test-key")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_COLOR", "false")

from config import AppConfig  # noqa: E402
from models import ProxyStats  # noqa: E402
from upstream import UpstreamClient  # noqa: E402


class ChunkStream(httpx.AsyncByteStream):
    """Upstream body delivered as the given chunks.

    error: raised after the last chunk (mid-stream failure).
    hang: after the last chunk, block until the stream is closed.
    """

    def __init__(
        self,
        chunks: List[bytes],
        error: Optional[Exception] = None,
        hang: bool = False,
    ) -> None:
        self.chunks = chunks
        self.error = error
        self.hang = hang
        self.closed = asyncio.Event()

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error
        if self.hang:
            await self.closed.wait()
            raise httpx.ReadError("connection closed")

    async def aclose(self) -> None:
        self.closed.set()


def sse(obj) -> bytes:
    """One SSE data event."""
    payload = obj if isinstance(obj, str) else json.dumps(obj)
    return f"data: {payload}\n\n".encode("utf-8")


def delta_chunk(**delta) -> dict:
    return {"choices": [{"index": 0, "delta": delta}]}


class FakeUpstream:
    """Records requests and answers them with a configurable handler."""

    def __init__(self, handler: Callable) -> None:
        self.handler = handler
        self.requests: List[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        result = self.handler(request)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    @property
    def calls(self) -> int:
        return len(self.requests)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def test_config():
    """Create test configuration."""
    return AppConfig(
        api_key="test-key",
        upstream_url="https://upstream.test/v1/chat/completions",
        user_agent="nim-proxy-test",
        request_timeout_s=5.0,
        disconnect_poll_s=0.01,
        max_request_bytes=1_000_000,
        stream_failure_mode="close",
        thinking_preview_chars=100,
        host="127.0.0.1",
        port=7860,
        log_level="DEBUG",
        log_path="",
        log_color=False,
    )


@pytest.fixture
def make_config(test_config):
    def _make(**overrides) -> AppConfig:
        return replace(test_config, **overrides)

    return _make


@pytest.fixture
def stats():
    return ProxyStats()


@pytest.fixture
def make_upstream():
    """Build (FakeUpstream, UpstreamClient) for a config and handler."""

    def _make(config: AppConfig, handler: Callable):
        fake = FakeUpstream(handler)
        return fake, UpstreamClient(config, transport=fake.transport())

    return _make


@pytest.fixture
async def make_client(stats, make_upstream):
    """In-process ASGI client for an app wired to a fake upstream.

    NOTE: httpx.ASGITransport instead of TestClient keeps tests deterministic.
    """
    clients: List[httpx.AsyncClient] = []

    def _make(config: AppConfig, handler: Callable):
        from nim_proxy_service import create_app

        fake, upstream_client = make_upstream(config, handler)
        app = create_app(config, stats=stats, upstream_client=upstream_client)
        transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
        client = httpx.AsyncClient(transport=transport, base_url="http://testserver")
        clients.append(client)
        return client, fake

    yield _make

    for client in clients:
        await client.aclose()

