"""Client-facing SSE channel with keep-alive and disconnect handling."""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from typing import Any

import structlog

from brand_chat.streaming.sse import DONE_FRAME, encode_comment, encode_data

logger = structlog.get_logger(__name__)

_END = object()


class ClientChannel:
    """Outbound frame queue between a running turn and the HTTP response.

    The turn writes events with `send`; the response drains `frames()`.
    A keep-alive comment is queued on a fixed interval while the channel is
    open. Once `disconnect()` is called every further write is dropped, but
    the producing turn is left running so it can drain the upstream stream.
    """

    def __init__(self, keepalive_interval: float = 20.0) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._keepalive_interval = keepalive_interval
        self._keepalive_task: asyncio.Task[None] | None = None
        self._closed = False
        self._finished = False
        self.frames_dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def finished(self) -> bool:
        return self._finished

    def start(self) -> None:
        if self._keepalive_task is None:
            self._keepalive_task = asyncio.create_task(self._keepalive())

    def send(self, payload: dict[str, Any] | str) -> None:
        self._put(encode_data(payload))

    def send_done(self) -> None:
        self._put(DONE_FRAME)

    def finish(self) -> None:
        """Mark the end of output; `frames()` returns after queued frames."""
        if self._finished:
            return
        self._finished = True
        self._stop_keepalive()
        self._queue.put_nowait(_END)

    def disconnect(self) -> None:
        """Silence the channel irrevocably after the client went away."""
        if not self._closed:
            logger.info("client_disconnected", frames_dropped=self.frames_dropped)
        self._closed = True
        self._stop_keepalive()

    async def frames(self) -> AsyncIterator[bytes]:
        while True:
            item = await self._queue.get()
            if item is _END or self._closed:
                return
            yield item

    def _put(self, frame: bytes) -> None:
        if self._closed or self._finished:
            self.frames_dropped += 1
            return
        self._queue.put_nowait(frame)

    async def _keepalive(self) -> None:
        while not (self._closed or self._finished):
            await asyncio.sleep(self._keepalive_interval)
            if self._closed or self._finished:
                return
            self._queue.put_nowait(encode_comment(f"keep-alive {int(time.time() * 1000)}"))

    def _stop_keepalive(self) -> None:
        if self._keepalive_task is not None and not self._keepalive_task.done():
            self._keepalive_task.cancel()
        self._keepalive_task = None
