"""Per-request outcome logging and counter updates."""

from __future__ import annotations

import logging

from models import ProxyStats, RequestContext
from sse_handler import ThinkingAccumulator

log = logging.getLogger("nim_proxy.reporter")

_RULE = "-" * 60


class OutcomeReporter:
    """Write the request lifecycle to the log and to the shared counters."""

    def __init__(self, stats: ProxyStats, preview_chars: int = 100) -> None:
        self.stats = stats
        self._preview_chars = preview_chars

    def _preview(self, text: str) -> str:
        if len(text) <= self._preview_chars:
            return text
        return text[: self._preview_chars] + "..."

    def request_started(self, ctx: RequestContext) -> None:
        self.stats.record_request(ctx.stream)
        log.info(_RULE)
        log.info(
            "[%s] NEW REQUEST model=%s stream=%s messages=%d from=%s time=%s",
            ctx.request_id,
            ctx.model,
            ctx.stream,
            ctx.message_count,
            ctx.client_ip,
            ctx.started_wall.isoformat(),
        )

    def upstream_connected(self, ctx: RequestContext, status_code: int) -> None:
        log.info("[%s] Upstream connected status=%s", ctx.request_id, status_code)

    def thinking_detected(self, ctx: RequestContext, source: str = "stream") -> None:
        self.stats.record_thinking()
        log.info("[%s] THINKING/REASONING DETECTED (%s)", ctx.request_id, source)

    def thinking_fragment(self, ctx: RequestContext, fragment: str) -> None:
        log.debug("[%s] Thinking: %s", ctx.request_id, self._preview(fragment))

    def completed(
        self,
        ctx: RequestContext,
        chunk_count: int,
        thinking: ThinkingAccumulator,
        content_chunks: int = 0,
    ) -> None:
        log.info(
            "[%s] COMPLETED stream=%s duration_ms=%.0f chunks=%d content_chunks=%d",
            ctx.request_id,
            ctx.stream,
            ctx.elapsed_ms(),
            chunk_count,
            content_chunks,
        )
        if thinking.detected:
            log.info("[%s] Thinking fragments=%d", ctx.request_id, len(thinking))
            log.info("[%s] Full thinking: %s", ctx.request_id, thinking.text)
        log.info(_RULE)

    def client_disconnected(self, ctx: RequestContext, chunk_count: int) -> None:
        log.warning(
            "[%s] Client disconnected after %.0fms chunks=%d; upstream closed",
            ctx.request_id,
            ctx.elapsed_ms(),
            chunk_count,
        )

    def error(
        self,
        ctx: RequestContext,
        kind: str,
        detail: str,
        status_code: int | None = None,
    ) -> None:
        """Count and log one failed request. Call at most once per request."""
        self.stats.record_error()
        log.error(
            "[%s] ERROR kind=%s status=%s after %.0fms: %s",
            ctx.request_id,
            kind,
            status_code if status_code is not None else "-",
            ctx.elapsed_ms(),
            detail,
        )
        log.info(_RULE)
