"""Server-sent event framing: incremental parsing and client frame encoding."""

from __future__ import annotations

import codecs
import json
from collections.abc import AsyncIterable, AsyncIterator, Callable
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

DONE_SENTINEL = "[DONE]"
DONE_FRAME = b"data: [DONE]\n\n"

MalformedHook = Callable[[str, Exception], None]


class SseEventParser:
    """Reassembles `data:` records from arbitrarily split byte chunks.

    Incomplete trailing lines are buffered across reads and prepended to the
    next chunk before re-splitting, and UTF-8 sequences split across reads are
    decoded incrementally, so any chunking of the same stream yields the same
    events. Comment lines, `event:` lines and blank lines are ignored. The
    `[DONE]` record marks end of stream; records after it are not parsed.
    """

    def __init__(self, *, on_malformed: MalformedHook | None = None) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._on_malformed = on_malformed
        self.done = False
        self.malformed_count = 0

    def feed(self, chunk: bytes | str) -> list[dict[str, Any]]:
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._parse_lines(lines)

    def flush(self) -> list[dict[str, Any]]:
        """Parse whatever is left once the upstream stream has ended."""
        remaining = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        if not remaining:
            return []
        return self._parse_lines(remaining.split("\n"))

    def _parse_lines(self, lines: list[str]) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        for line in lines:
            event = self._parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def _parse_line(self, line: str) -> dict[str, Any] | None:
        if self.done:
            return None
        trimmed = line.strip()
        if not trimmed.startswith("data:"):
            return None
        data = trimmed[5:].strip()
        if not data:
            return None
        if data == DONE_SENTINEL:
            self.done = True
            return None
        try:
            event = json.loads(data)
        except json.JSONDecodeError as exc:
            self._report_malformed(data, exc)
            return None
        if not isinstance(event, dict):
            self._report_malformed(data, ValueError("event payload is not an object"))
            return None
        return event

    def _report_malformed(self, data: str, exc: Exception) -> None:
        self.malformed_count += 1
        logger.warning("sse_record_malformed", error=str(exc), preview=data[:120])
        if self._on_malformed is not None:
            self._on_malformed(data, exc)


async def iter_events(
    chunks: AsyncIterable[bytes],
    *,
    on_malformed: MalformedHook | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """Yield parsed events from an upstream byte stream until it ends."""

    parser = SseEventParser(on_malformed=on_malformed)
    async for chunk in chunks:
        for event in parser.feed(chunk):
            yield event
    for event in parser.flush():
        yield event


def encode_data(payload: dict[str, Any] | str) -> bytes:
    body = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return f"data: {body}\n\n".encode("utf-8")


def encode_comment(text: str) -> bytes:
    return f": {text}\n\n".encode("utf-8")
