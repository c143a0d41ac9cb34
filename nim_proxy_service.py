"""
NVIDIA NIM proxy service (OpenAI-compatible chat completions pass-through).

Forwards chat completion requests to a single upstream inference API and
relays buffered and SSE-streamed answers unmodified. Streamed events are
inspected on the side to detect reasoning ("thinking") content, which is
logged and counted.

Endpoints:
- GET  /                     status + whether API_KEY is configured
- GET  /health               uptime and process memory
- GET  /stats                request counters
- POST /v1/chat/completions  main proxy (alias: POST /chat/completions)
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

import psutil
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from config import AppConfig, load_config
from logger import setup_logging
from models import ProxyStats, RequestContext
from relay import RelayPipeline, json_error
from reporter import OutcomeReporter
from upstream import UpstreamClient
from utils import dump_config, load_env_files

log = logging.getLogger("nim_proxy")

CHAT_COMPLETION_PATHS = ("/v1/chat/completions", "/chat/completions")


def create_app(
    config: AppConfig,
    stats: Optional[ProxyStats] = None,
    upstream_client: Optional[UpstreamClient] = None,
) -> FastAPI:
    """Build the FastAPI application around one config and one counter set."""
    stats = stats if stats is not None else ProxyStats()
    upstream_client = upstream_client if upstream_client is not None else UpstreamClient(config)
    reporter = OutcomeReporter(stats, preview_chars=config.thinking_preview_chars)
    process = psutil.Process()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        log.info("Proxy server running on http://%s:%s", config.host, config.port)
        log.info("  GET  /         - Status check")
        log.info("  GET  /health   - Health check")
        log.info("  GET  /stats    - Usage statistics")
        log.info("  POST /v1/chat/completions - Main proxy")

        yield  # Application is running

        log.info("Shutting down gracefully... stats=%s", stats.snapshot())

    app = FastAPI(title="nim-proxy", version="1.0.0", lifespan=lifespan)
    app.state.config = config
    app.state.stats = stats

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    @app.get("/")
    async def root() -> Dict[str, Any]:
        """Liveness plus configuration sanity."""
        return {
            "status": "online",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "apiKeyConfigured": config.api_key_configured,
        }

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        """Health check endpoint."""
        return {
            "status": "healthy",
            "uptime": time.time() - process.create_time(),
            "memory": process.memory_info()._asdict(),
        }

    @app.get("/stats")
    async def get_stats() -> Dict[str, int]:
        return stats.snapshot()

    async def chat_completions(request: Request) -> Response:
        """Relay one chat completion request to the upstream."""
        # Basic request size guard (prevents trivial DoS via huge JSON bodies).
        cl = request.headers.get("content-length")
        if cl:
            try:
                n = int(cl)
            except ValueError:
                return json_error(400, f"Invalid Content-Length header: {cl!r}")
            if n > config.max_request_bytes:
                return json_error(413, f"Request too large: {n} bytes (max {config.max_request_bytes})")

        # Content-Length is absent on chunked uploads; count what actually arrives.
        parts: List[bytes] = []
        received = 0
        async for chunk in request.stream():
            received += len(chunk)
            if received > config.max_request_bytes:
                return json_error(413, f"Request too large: over {config.max_request_bytes} bytes")
            parts.append(chunk)

        try:
            body = json.loads(b"".join(parts))
        except ValueError:
            return json_error(400, "Invalid JSON body")
        if not isinstance(body, dict):
            return json_error(400, "Invalid JSON body: expected object")

        client_ip = request.client.host if request.client else "unknown"
        ctx = RequestContext.from_body(body, client_ip=client_ip)
        pipeline = RelayPipeline(
            ctx,
            config,
            upstream_client,
            reporter,
            is_disconnected=request.is_disconnected,
        )
        return await pipeline.run(body)

    for path in CHAT_COMPLETION_PATHS:
        app.add_api_route(path, chat_completions, methods=["POST"])

    return app


# Load environment
load_env_files()

# Load configuration
config = load_config()
config.validate(require_api_key=False)

# Initialize logging
setup_logging(config.log_level, config.log_path, config.log_color)
dump_config(config)

app = create_app(config)


def main() -> None:
    import uvicorn

    uvicorn.run(app, host=config.host, port=config.port, reload=False)


if __name__ == "__main__":
    main()
