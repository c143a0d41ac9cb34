"""Server-Sent Events (SSE) line splitting and side-channel inspection."""

from __future__ import annotations

import codecs
import enum
import json
import logging
from typing import Any, Callable, List, Optional, Tuple

log = logging.getLogger("nim_proxy.sse")

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"
SSE_DONE = b"data: [DONE]\n\n"


class LineKind(enum.Enum):
    IGNORED = "ignored"  # comment, keepalive, event:/id: fields
    DONE = "done"
    NOISE = "noise"  # data line whose payload is not JSON
    JSON = "json"


class SSELineSplitter:
    """
    Re-segment arbitrarily chunked bytes into complete newline-delimited lines.

    The upstream may split one SSE line across chunks (and a UTF-8 character
    across chunks), so the unterminated tail is carried into the next feed.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    @property
    def buffer(self) -> str:
        """Text after the last newline seen so far."""
        return self._buffer

    def feed(self, chunk: bytes | str) -> List[str]:
        """Append a chunk and return every line it completed, in order."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return lines

    def flush(self) -> str:
        """Return and clear the unterminated remainder (end of stream)."""
        rest = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return rest


def classify_data_line(line: str) -> Tuple[LineKind, Any]:
    """
    Classify one SSE line.

    Returns (kind, payload); payload is the parsed JSON value for LineKind.JSON
    and None otherwise.
    """
    if not line.startswith(DATA_PREFIX):
        return LineKind.IGNORED, None
    data = line[len(DATA_PREFIX):].strip()
    if data == DONE_SENTINEL:
        return LineKind.DONE, None
    try:
        return LineKind.JSON, json.loads(data)
    except ValueError:
        return LineKind.NOISE, None


def _first_choice(obj: Any) -> Optional[dict]:
    if not isinstance(obj, dict):
        return None
    choices = obj.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    ch0 = choices[0]
    return ch0 if isinstance(ch0, dict) else None


def _non_empty_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _field(container: Any, key: str) -> Any:
    return container.get(key) if isinstance(container, dict) else None


def extract_thinking_fragment(obj: Any) -> Optional[str]:
    """
    Reasoning text carried by a streamed chunk, if any.

    Only chunks with a ``choices[0].delta`` object are considered. Checked in
    order: delta.reasoning_content, delta.thinking, message.reasoning_content.
    """
    ch0 = _first_choice(obj)
    if ch0 is None:
        return None
    delta = ch0.get("delta")
    if not isinstance(delta, dict):
        return None
    for candidate in (
        delta.get("reasoning_content"),
        delta.get("thinking"),
        _field(ch0.get("message"), "reasoning_content"),
    ):
        text = _non_empty_str(candidate)
        if text is not None:
            return text
    return None


def extract_content_fragment(obj: Any) -> Optional[str]:
    """Ordinary completion text of a streamed chunk, if any."""
    ch0 = _first_choice(obj)
    if ch0 is None:
        return None
    return _non_empty_str(_field(ch0.get("delta"), "content"))


def extract_message_reasoning(obj: Any) -> Optional[str]:
    """Reasoning text of a buffered (non-stream) chat completion."""
    ch0 = _first_choice(obj)
    if ch0 is None:
        return None
    return _non_empty_str(_field(ch0.get("message"), "reasoning_content"))


class ThinkingAccumulator:
    """Reasoning fragments collected for one request."""

    def __init__(self) -> None:
        self.fragments: List[str] = []
        self.detected = False

    def add(self, fragment: str) -> bool:
        """Store a fragment; True only for the first one of the request."""
        self.fragments.append(fragment)
        if self.detected:
            return False
        self.detected = True
        return True

    @property
    def text(self) -> str:
        return "".join(self.fragments)

    def __len__(self) -> int:
        return len(self.fragments)


class EventInspector:
    """Inspect SSE lines for reasoning content without touching the transport."""

    def __init__(
        self,
        accumulator: ThinkingAccumulator,
        on_first_thinking: Callable[[], None] | None = None,
        on_fragment: Callable[[str], None] | None = None,
    ) -> None:
        self.accumulator = accumulator
        self._on_first_thinking = on_first_thinking
        self._on_fragment = on_fragment
        self.content_chunks = 0
        self.done_seen = False

    def feed_line(self, line: str) -> LineKind:
        kind, obj = classify_data_line(line)
        if kind is LineKind.DONE:
            self.done_seen = True
        if kind is not LineKind.JSON:
            return kind

        fragment = extract_thinking_fragment(obj)
        if fragment is not None:
            if self.accumulator.add(fragment) and self._on_first_thinking is not None:
                self._on_first_thinking()
            if self._on_fragment is not None:
                self._on_fragment(fragment)

        if extract_content_fragment(obj) is not None:
            self.content_chunks += 1
        return kind

    def feed_lines(self, lines: List[str]) -> None:
        for line in lines:
            self.feed_line(line)


def sse_error_frame(message: str, error_type: str = "upstream_stream_error") -> bytes:
    """Single SSE event carrying an OpenAI-style error object."""
    payload = {"error": {"message": message, "type": error_type}}
    return (DATA_PREFIX + json.dumps(payload, ensure_ascii=False) + "\n\n").encode("utf-8")
