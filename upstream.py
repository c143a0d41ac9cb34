"""Upstream inference API communication."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from config import AppConfig

log = logging.getLogger("nim_proxy.upstream")


class UpstreamError(Exception):
    """Base class for failures to obtain a usable upstream response."""


class UpstreamTimeoutError(UpstreamError):
    """Upstream did not respond within the configured budget."""


class UpstreamUnavailableError(UpstreamError):
    """No response at all (connection or network failure)."""


class UpstreamStatusError(UpstreamError):
    """Upstream answered with a non-success status."""

    def __init__(self, status_code: int, body: bytes, content_type: str = "") -> None:
        super().__init__(f"Upstream returned HTTP {status_code}")
        self.status_code = status_code
        self.body = body
        self.content_type = content_type


class UpstreamStream:
    """A live upstream response plus the client that owns its connection."""

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response) -> None:
        self._client = client
        self._response = response
        self._closed = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def closed(self) -> bool:
        return self._closed

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        """Decoded body chunks in arrival order."""
        return self._response.aiter_bytes()

    async def aclose(self) -> None:
        """Close response and client; safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()


class UpstreamClient:
    """Issue chat completion calls against the single configured upstream."""

    def __init__(
        self,
        config: AppConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._config = config
        self._transport = transport

    def get_headers(self, stream: bool) -> Dict[str, str]:
        """Headers for one upstream call."""
        return {
            "Authorization": f"Bearer {self._config.api_key.strip()}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
            "User-Agent": self._config.user_agent,
        }

    def new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self._config.request_timeout_s),
            transport=self._transport,
        )

    async def open_chat_completion(self, body: Dict[str, Any], stream: bool) -> UpstreamStream:
        """
        Send the chat completion body upstream, verbatim.

        The response is always opened as a stream. The wait for response
        headers is bounded by REQUEST_TIMEOUT_S in total; reads after that are
        bounded by the same value of inactivity.

        Raises UpstreamTimeoutError, UpstreamStatusError or UpstreamUnavailableError.
        """
        timeout_s = self._config.request_timeout_s
        client = self.new_client()
        req = client.build_request(
            "POST",
            self._config.upstream_url,
            headers=self.get_headers(stream),
            json=body,
        )

        t0 = time.monotonic()
        try:
            resp = await asyncio.wait_for(client.send(req, stream=True), timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            await client.aclose()
            raise UpstreamTimeoutError(f"No upstream response within {timeout_s:.1f}s") from e
        except httpx.TransportError as e:
            await client.aclose()
            raise UpstreamUnavailableError(f"{type(e).__name__}: {e}") from e
        except BaseException:
            await client.aclose()
            raise

        dt = (time.monotonic() - t0) * 1000
        log.debug("Upstream chat status=%s ms=%.1f stream=%s", resp.status_code, dt, stream)

        if not resp.is_success:
            content_type = resp.headers.get("content-type", "")
            err_body = await self.read_error_body(resp)
            await resp.aclose()
            await client.aclose()
            log.warning(
                "Upstream chat error status=%s content-type=%s bytes=%d",
                resp.status_code,
                content_type,
                len(err_body),
            )
            raise UpstreamStatusError(resp.status_code, err_body, content_type)

        return UpstreamStream(client, resp)

    @staticmethod
    async def read_error_body(resp: httpx.Response, timeout_s: float = 5.0) -> bytes:
        """Best-effort: read the full error body without risking a hang."""
        try:
            return await asyncio.wait_for(resp.aread(), timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.HTTPError) as e:
            log.warning("Could not read upstream error body: %r", e)
            return b""
