"""Per-request context and process-wide counters."""

from __future__ import annotations

import secrets
import string
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_request_id() -> str:
    """Correlation id of the form ``req_<epoch-ms>_<9 chars>``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"req_{int(time.time() * 1000)}_{suffix}"


@dataclass(frozen=True)
class RequestContext:
    """Immutable facts about one inbound chat request."""

    request_id: str
    stream: bool
    model: str
    message_count: int
    client_ip: str = "unknown"
    started_at: float = field(default_factory=time.monotonic)
    started_wall: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_body(cls, body: Dict[str, Any], client_ip: str = "unknown") -> RequestContext:
        """Build a context from a parsed chat-completion body."""
        messages = body.get("messages")
        model = body.get("model")
        return cls(
            request_id=new_request_id(),
            # only a literal JSON true selects streaming
            stream=body.get("stream") is True,
            model=str(model) if model else "unspecified",
            message_count=len(messages) if isinstance(messages, list) else 0,
            client_ip=client_ip,
        )

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000


class ProxyStats:
    """Process-wide request counters.

    Passed explicitly to whoever mutates them. Increments take a lock so the
    counters stay exact even if a caller runs outside the event loop thread.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.total_requests = 0
        self.streaming_requests = 0
        self.thinking_detected = 0
        self.errors = 0

    def record_request(self, stream: bool) -> None:
        with self._lock:
            self.total_requests += 1
            if stream:
                self.streaming_requests += 1

    def record_thinking(self) -> None:
        with self._lock:
            self.thinking_detected += 1

    def record_error(self) -> None:
        with self._lock:
            self.errors += 1

    def snapshot(self) -> Dict[str, int]:
        """Counters in the JSON shape served by ``GET /stats``."""
        with self._lock:
            return {
                "totalRequests": self.total_requests,
                "streamingRequests": self.streaming_requests,
                "thinkingDetected": self.thinking_detected,
                "errors": self.errors,
            }
