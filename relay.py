"""Relay pipeline: one instance per inbound chat completion request."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional

import httpx
from fastapi import Response
from fastapi.responses import JSONResponse, StreamingResponse

from config import AppConfig
from models import RequestContext
from reporter import OutcomeReporter
from sse_handler import (
    SSE_DONE,
    EventInspector,
    SSELineSplitter,
    ThinkingAccumulator,
    extract_message_reasoning,
    sse_error_frame,
)
from upstream import (
    UpstreamClient,
    UpstreamError,
    UpstreamStatusError,
    UpstreamStream,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)

log = logging.getLogger("nim_proxy.relay")

DisconnectProbe = Callable[[], Awaitable[bool]]


class RelayState(enum.Enum):
    IDLE = "idle"
    CALLING = "calling"
    STREAMING = "streaming"
    BUFFERING = "buffering"
    COMPLETED = "completed"
    FAILED = "failed"


def json_error(status_code: int, message: str, request_id: str | None = None) -> JSONResponse:
    """Structured ``{"error": ...}`` response."""
    headers = {"X-Request-ID": request_id} if request_id else None
    return JSONResponse({"error": message}, status_code=status_code, headers=headers)


class RelayStreamingResponse(StreamingResponse):
    """StreamingResponse that releases the upstream even if the body is never iterated."""

    def __init__(
        self,
        content: AsyncGenerator[bytes, None],
        on_close: Callable[[], Awaitable[None]],
        **kwargs: Any,
    ) -> None:
        super().__init__(content, **kwargs)
        self._on_close = on_close

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self._on_close()


class RelayPipeline:
    """
    Forward one chat completion to the upstream and relay the answer.

    Streaming: every upstream chunk is yielded to the client unchanged before
    it is fed to the line splitter and event inspector, so inspection can
    never delay or alter what the client receives.

    Buffering: the whole upstream body is collected, checked once for
    reasoning content and returned with the upstream status.
    """

    def __init__(
        self,
        ctx: RequestContext,
        config: AppConfig,
        upstream: UpstreamClient,
        reporter: OutcomeReporter,
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> None:
        self.ctx = ctx
        self.config = config
        self.upstream = upstream
        self.reporter = reporter
        self.state = RelayState.IDLE
        self.thinking = ThinkingAccumulator()
        self.chunk_count = 0
        self.content_chunks = 0
        self.client_disconnected = False
        self._is_disconnected = is_disconnected
        self._failed = False
        self._disconnect_reported = False

    def _transition(self, state: RelayState) -> None:
        log.debug("[%s] %s -> %s", self.ctx.request_id, self.state.value, state.value)
        self.state = state

    def _fail(self, kind: str, detail: str, status_code: int | None = None) -> None:
        self._transition(RelayState.FAILED)
        if self._failed:
            return
        self._failed = True
        self.reporter.error(self.ctx, kind, detail, status_code)

    def stream_headers(self) -> Dict[str, str]:
        return {
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            "X-Request-ID": self.ctx.request_id,
        }

    async def run(self, body: Dict[str, Any]) -> Response:
        """Drive the request from IDLE to a response."""
        self.reporter.request_started(self.ctx)

        if not self.config.api_key_configured:
            self._fail("config", "API_KEY missing", 500)
            return json_error(500, "Server misconfigured: API_KEY missing", self.ctx.request_id)

        self._transition(RelayState.CALLING)
        try:
            upstream = await self.upstream.open_chat_completion(body, self.ctx.stream)
        except UpstreamError as e:
            return self._upstream_error_response(e)
        except Exception as e:
            log.exception("[%s] Unexpected error calling upstream", self.ctx.request_id)
            self._fail("internal", str(e), 500)
            return json_error(500, str(e), self.ctx.request_id)

        self.reporter.upstream_connected(self.ctx, upstream.status_code)

        if self.ctx.stream:
            self._transition(RelayState.STREAMING)
            return RelayStreamingResponse(
                self.relay_stream(upstream),
                on_close=lambda: self._close_stream(upstream),
                status_code=upstream.status_code,
                media_type="text/event-stream",
                headers=self.stream_headers(),
            )

        self._transition(RelayState.BUFFERING)
        return await self.relay_buffered(upstream)

    def _upstream_error_response(self, e: UpstreamError) -> Response:
        """Map a failure that happened before any header was sent."""
        rid = self.ctx.request_id
        if isinstance(e, UpstreamTimeoutError):
            self._fail("timeout", str(e), 504)
            return json_error(504, "Request timeout", rid)
        if isinstance(e, UpstreamStatusError):
            detail = e.body.decode("utf-8", errors="replace")
            self._fail("upstream_status", detail or str(e), e.status_code)
            if not e.body:
                return Response(
                    content="Upstream error",
                    status_code=e.status_code,
                    media_type="text/plain",
                    headers={"X-Request-ID": rid},
                )
            return Response(
                content=e.body,
                status_code=e.status_code,
                media_type=e.content_type or "application/json",
                headers={"X-Request-ID": rid},
            )
        if isinstance(e, UpstreamUnavailableError):
            self._fail("network", f"No response from upstream: {e}", 504)
            return json_error(504, "Gateway timeout", rid)
        self._fail("upstream", str(e), 500)
        return json_error(500, str(e), rid)

    # ------------------------------------------------------------------
    # Buffering
    # ------------------------------------------------------------------

    async def relay_buffered(self, upstream: UpstreamStream) -> Response:
        rid = self.ctx.request_id
        parts: List[bytes] = []
        try:
            async for chunk in upstream.aiter_bytes():
                self.chunk_count += 1
                parts.append(chunk)
        except httpx.TimeoutException as e:
            self._fail("timeout", f"Reading upstream body: {e!r}", 504)
            return json_error(504, "Request timeout", rid)
        except httpx.HTTPError as e:
            self._fail("network", f"Reading upstream body: {e!r}", 504)
            return json_error(504, "Gateway timeout", rid)
        except Exception as e:
            log.exception("[%s] Unexpected error reading upstream body", rid)
            self._fail("internal", str(e), 500)
            return json_error(500, str(e), rid)
        finally:
            await upstream.aclose()

        raw = b"".join(parts)
        self._inspect_buffered(raw)
        self._transition(RelayState.COMPLETED)
        self.reporter.completed(self.ctx, self.chunk_count, self.thinking)
        return Response(
            content=raw,
            status_code=upstream.status_code,
            media_type="application/json",
            headers={"X-Request-ID": rid},
        )

    def _inspect_buffered(self, raw: bytes) -> None:
        try:
            obj = json.loads(raw)
        except ValueError:
            log.debug("[%s] Buffered upstream body is not JSON", self.ctx.request_id)
            return
        reasoning = extract_message_reasoning(obj)
        if reasoning is None:
            return
        if self.thinking.add(reasoning):
            self.reporter.thinking_detected(self.ctx, source="non-stream")
        self.reporter.thinking_fragment(self.ctx, reasoning)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def relay_stream(self, upstream: UpstreamStream) -> AsyncGenerator[bytes, None]:
        """
        Yield upstream chunks unchanged; inspect them after they are handed off.

        Does not raise to the client once headers are out: a broken upstream
        ends the stream (plus the configured failure tail).
        """
        splitter = SSELineSplitter()
        inspector = EventInspector(
            self.thinking,
            on_first_thinking=lambda: self.reporter.thinking_detected(self.ctx),
            on_fragment=lambda fragment: self.reporter.thinking_fragment(self.ctx, fragment),
        )
        watchdog = self._start_disconnect_watchdog(upstream)
        failure: Optional[Exception] = None
        try:
            try:
                async for chunk in upstream.aiter_bytes():
                    self.chunk_count += 1
                    yield chunk
                    self._inspect_chunk(splitter, inspector, chunk)
            except Exception as e:
                # reads fail once the watchdog has closed the upstream for a gone client
                if not self.client_disconnected:
                    failure = e

            self.content_chunks = inspector.content_chunks
            leftover = splitter.flush()
            if leftover.strip():
                log.debug("[%s] Discarding unterminated tail %r", self.ctx.request_id, leftover[:200])

            if self.client_disconnected:
                self._report_disconnect()
                self._transition(RelayState.FAILED)
            elif failure is not None:
                kind = "stream_timeout" if isinstance(failure, httpx.TimeoutException) else "stream"
                self._fail(kind, f"Upstream stream failed after {self.chunk_count} chunks: {failure!r}")
                for frame in self._failure_tail(failure, inspector.done_seen):
                    yield frame
            else:
                self._transition(RelayState.COMPLETED)
                self.reporter.completed(self.ctx, self.chunk_count, self.thinking, self.content_chunks)
        except (asyncio.CancelledError, GeneratorExit):
            self.client_disconnected = True
            self._report_disconnect()
            self._transition(RelayState.FAILED)
            raise
        finally:
            if watchdog is not None:
                watchdog.cancel()
            await upstream.aclose()

    async def _close_stream(self, upstream: UpstreamStream) -> None:
        """Runs after the response is sent or abandoned."""
        if self.state is RelayState.STREAMING:
            # body never finished; the client went away before or during the send
            self.client_disconnected = True
            self._report_disconnect()
            self._transition(RelayState.FAILED)
        await upstream.aclose()

    def _inspect_chunk(self, splitter: SSELineSplitter, inspector: EventInspector, chunk: bytes) -> None:
        try:
            inspector.feed_lines(splitter.feed(chunk))
        except Exception:
            log.debug("[%s] Inspection error ignored", self.ctx.request_id, exc_info=True)

    def _failure_tail(self, failure: Exception, done_seen: bool) -> List[bytes]:
        """Frames appended after a mid-stream failure, per STREAM_FAILURE_MODE."""
        mode = self.config.stream_failure_mode
        if mode == "close" or done_seen:
            return []
        if mode == "error":
            return [sse_error_frame(f"Upstream stream failed: {type(failure).__name__}"), SSE_DONE]
        return [SSE_DONE]

    def _report_disconnect(self) -> None:
        if self._disconnect_reported:
            return
        self._disconnect_reported = True
        self.reporter.client_disconnected(self.ctx, self.chunk_count)

    def _start_disconnect_watchdog(self, upstream: UpstreamStream) -> Optional[asyncio.Task[None]]:
        if self._is_disconnected is None:
            return None
        return asyncio.create_task(
            self._watch_disconnect(upstream),
            name=f"nim_proxy.disconnect_watchdog.{self.ctx.request_id}",
        )

    async def _watch_disconnect(self, upstream: UpstreamStream) -> None:
        """Close the upstream read as soon as the client connection is gone."""
        if self._is_disconnected is None:
            return
        try:
            while not upstream.closed:
                await asyncio.sleep(self.config.disconnect_poll_s)
                if await self._is_disconnected():
                    self.client_disconnected = True
                    log.info("[%s] Client gone; aborting upstream read", self.ctx.request_id)
                    with contextlib.suppress(httpx.HTTPError, RuntimeError):
                        await upstream.aclose()
                    return
        except asyncio.CancelledError:
            return
