"""
OpenRouter SSE stream → Anthropic SSE stream.

The translator is a small state machine (STARTED → STREAMING → STOPPED). It
frames the response with message_start before reading any upstream bytes,
forwards every text delta as soon as its record is complete, remembers the
last usage object it saw, and closes with message_delta (when usage was
reported) and message_stop.
"""

import codecs
import enum
import json
import logging
import uuid
from typing import Any, AsyncIterator, Optional

from usage import empty_usage, map_usage

logger = logging.getLogger(__name__)

DONE_TOKEN = "[DONE]"
RECORD_DELIMITER = "\n\n"


def sse_event(event: str, data: Any) -> str:
    """
    Format a Server-Sent Event string.
    """
    if isinstance(data, dict):
        data_str = json.dumps(data, ensure_ascii=False)
    else:
        data_str = str(data)

    return f"event: {event}\ndata: {data_str}\n\n"


def record_payload(record: str) -> Optional[str]:
    """
    Extract the data payload of one SSE record.

    `data:` lines are joined; comment lines (": OPENROUTER PROCESSING") and
    other fields are ignored. A record with no data line is returned as-is
    so bare JSON records still parse.
    """
    record = record.strip()
    if not record:
        return None

    data_lines = []
    has_fields = False
    for line in record.splitlines():
        line = line.strip()
        if line.lower().startswith("data:"):
            data_lines.append(line[5:].lstrip())
        elif line.startswith(":") or line.lower().startswith(("event:", "id:", "retry:")):
            has_fields = True

    if data_lines:
        return "\n".join(data_lines)
    if has_fields:
        return None
    return record


class StreamState(enum.Enum):
    STARTED = "started"
    STREAMING = "streaming"
    STOPPED = "stopped"


class StreamTranslator:
    """Translate one upstream byte stream; instances are single use."""

    def __init__(self, model: str, message_id: Optional[str] = None):
        self.model = model
        self.message_id = message_id or f"msg_{uuid.uuid4().hex}"
        self.state = StreamState.STARTED
        self.last_usage: Optional[dict] = None
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def start(self) -> str:
        return sse_event("message_start", {
            "type": "message_start",
            "message": {
                "id": self.message_id,
                "type": "message",
                "role": "assistant",
                "model": self.model,
                "content": [],
                "stop_reason": None,
                "stop_sequence": None,
                "usage": empty_usage(),
            },
        })

    def _handle_record(self, record: str) -> list[str]:
        payload = record_payload(record)
        if payload is None or payload.strip() == DONE_TOKEN:
            return []

        try:
            chunk = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug(f"Skipping unparseable SSE record: {payload[:100]}")
            return []
        if not isinstance(chunk, dict):
            return []

        events = []
        choices = chunk.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            delta = choices[0].get("delta")
            text = delta.get("content") if isinstance(delta, dict) else None
            if isinstance(text, str) and text:
                events.append(sse_event("content_block_delta", {
                    "type": "content_block_delta",
                    "index": 0,
                    "delta": {"type": "text_delta", "text": text},
                }))

        if isinstance(chunk.get("usage"), dict) and chunk["usage"]:
            self.last_usage = chunk["usage"]

        return events

    def feed(self, data: bytes) -> list[str]:
        """Consume one upstream chunk and return the events it completes."""
        if self.state is StreamState.STOPPED:
            raise RuntimeError("stream already stopped")
        self.state = StreamState.STREAMING

        # CRLF-framed streams are split on the same blank-line delimiter
        self._buffer = (self._buffer + self._decoder.decode(data)).replace("\r\n", "\n")
        records = self._buffer.split(RECORD_DELIMITER)
        self._buffer = records.pop()

        events = []
        for record in records:
            events.extend(self._handle_record(record))
        return events

    def finish(self) -> list[str]:
        """Flush the carry-over buffer and emit the closing events."""
        if self.state is StreamState.STOPPED:
            return []

        self._buffer = (self._buffer + self._decoder.decode(b"", final=True)).replace("\r\n", "\n")
        events = self._handle_record(self._buffer)
        self._buffer = ""

        if self.last_usage is not None:
            usage = map_usage(self.last_usage)
            events.append(sse_event("message_delta", {
                "type": "message_delta",
                "delta": {"usage": usage},
                "usage": usage,
            }))

        events.append(sse_event("message_stop", {"type": "message_stop"}))
        self.state = StreamState.STOPPED
        return events

    async def translate(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        """
        Re-frame an upstream byte stream as Anthropic SSE bytes.

        Errors raised while reading upstream propagate to the consumer; the
        stream is never silently truncated.
        """
        yield self.start().encode("utf-8")

        async for data in chunks:
            for event in self.feed(data):
                yield event.encode("utf-8")

        for event in self.finish():
            yield event.encode("utf-8")
