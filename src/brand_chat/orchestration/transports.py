"""Run transports: push-driven streaming relay and bounded polling."""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Protocol

import structlog

from brand_chat.agent.accumulator import ToolCallAccumulator
from brand_chat.config import RunConfig
from brand_chat.errors import RunTimeout, UpstreamUnavailable
from brand_chat.obs.tracing import TurnRecord
from brand_chat.streaming.channel import ClientChannel
from brand_chat.streaming.sse import iter_events
from brand_chat.types import RunEpisode, RunStatus, ToolOutput
from brand_chat.upstream.client import RunApiClient

logger = structlog.get_logger(__name__)


class RunTransport(Protocol):
    """Suspend/resume primitive the orchestrator drives a run through.

    Both calls return once the run is paused on `requires_action` (with the
    complete set of pending calls) or has reached a terminal state.
    Episode texts are joined with `text_separator`, so the turn text matches
    what the client saw: streamed deltas arrive back to back, polled replies
    are separate messages.
    """

    name: str
    text_separator: str

    async def start(
        self, thread_id: str, body: dict[str, Any], record: TurnRecord
    ) -> RunEpisode:
        ...

    async def submit(
        self,
        thread_id: str,
        run_id: str | None,
        outputs: list[ToolOutput],
        record: TurnRecord,
    ) -> RunEpisode:
        ...


class StreamingTransport:
    """Consumes the upstream event stream and relays text deltas to a client.

    Message-delta events carrying text are forwarded verbatim to the channel.
    The upstream stream is always read to its end, even once the channel has
    been disconnected and silently drops every write.
    """

    name = "stream"
    text_separator = ""

    def __init__(
        self,
        client: RunApiClient,
        channel: ClientChannel | None = None,
        accumulator: ToolCallAccumulator | None = None,
    ) -> None:
        self.client = client
        self.channel = channel
        self.accumulator = accumulator or ToolCallAccumulator()

    async def start(
        self, thread_id: str, body: dict[str, Any], record: TurnRecord
    ) -> RunEpisode:
        async with self.client.stream_run(thread_id, body) as chunks:
            return await self._consume(chunks, record)

    async def submit(
        self,
        thread_id: str,
        run_id: str | None,
        outputs: list[ToolOutput],
        record: TurnRecord,
    ) -> RunEpisode:
        payload = [output.as_payload() for output in outputs]
        logger.info("tool_outputs_submitting", run_id=run_id, count=len(payload))
        async with self.client.stream_submit_tool_outputs(thread_id, run_id, payload) as chunks:
            return await self._consume(chunks, record, run_id=run_id)

    async def _consume(
        self,
        chunks: AsyncIterator[bytes],
        record: TurnRecord,
        *,
        run_id: str | None = None,
    ) -> RunEpisode:
        def _on_malformed(data: str, exc: Exception) -> None:
            record.note_failure("stream_event", f"{exc}: {data[:120]}")

        status: RunStatus | None = None
        text_parts: list[str] = []
        async for event in iter_events(chunks, on_malformed=_on_malformed):
            kind = event.get("object")
            if kind == "thread.run":
                run_id = event.get("id") or run_id
                record.note_run(run_id)
                status = RunStatus.parse(event.get("status")) or status
            elif kind == "thread.message.delta":
                text = delta_text(event)
                if text:
                    text_parts.append(text)
                    if self.channel is not None:
                        self.channel.send(event)
            elif kind == "thread.run.step.delta":
                self.accumulator.add_step_delta(event)

        episode = RunEpisode(run_id=run_id, status=status, text="".join(text_parts))
        if status is RunStatus.REQUIRES_ACTION:
            episode.tool_calls = self.accumulator.drain()
        elif len(self.accumulator):
            logger.warning("tool_calls_unresolved", run_id=run_id, count=len(self.accumulator))
            self.accumulator.drain()
        return episode


class PollingTransport:
    """Drives a run by fetching its status on a fixed interval.

    One wall-clock budget covers the whole turn, across tool submissions.
    Once it is spent the turn fails with `RunTimeout` and no further status
    request is made.
    """

    name = "poll"
    text_separator = "\n\n"

    def __init__(
        self,
        client: RunApiClient,
        config: RunConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.config = config or RunConfig()
        self.accumulator = ToolCallAccumulator()
        self._sleep = sleep
        self._clock = clock
        self._deadline: float | None = None

    async def start(
        self, thread_id: str, body: dict[str, Any], record: TurnRecord
    ) -> RunEpisode:
        self._deadline = self._clock() + self.config.run_timeout_seconds
        run = await self.client.create_run(thread_id, body)
        return await self._poll(thread_id, run, record)

    async def submit(
        self,
        thread_id: str,
        run_id: str | None,
        outputs: list[ToolOutput],
        record: TurnRecord,
    ) -> RunEpisode:
        payload = [output.as_payload() for output in outputs]
        logger.info("tool_outputs_submitting", run_id=run_id, count=len(payload))
        run = await self.client.submit_tool_outputs(thread_id, run_id or "", payload)
        return await self._poll(thread_id, run, record)

    async def _poll(
        self, thread_id: str, run: dict[str, Any], record: TurnRecord
    ) -> RunEpisode:
        run_id = run.get("id")
        if not run_id:
            raise UpstreamUnavailable("Run response carried no id")
        record.note_run(run_id)
        status = RunStatus.parse(run.get("status"))
        while not _is_pause_or_terminal(status):
            self._check_deadline(run_id)
            await self._sleep(self.config.poll_interval_seconds)
            self._check_deadline(run_id)
            run = await self.client.get_run(thread_id, run_id)
            status = RunStatus.parse(run.get("status"))
            logger.debug("run_polled", run_id=run_id, status=run.get("status"))

        if status is RunStatus.REQUIRES_ACTION:
            self.accumulator.add_required_action(run)
            return RunEpisode(run_id=run_id, status=status, tool_calls=self.accumulator.drain())
        text = ""
        if status is RunStatus.COMPLETED:
            text = await self.client.latest_assistant_text(
                thread_id, limit=self.config.message_lookback
            )
        return RunEpisode(run_id=run_id, status=status, text=text)

    def _check_deadline(self, run_id: str | None) -> None:
        if self._deadline is None:
            self._deadline = self._clock() + self.config.run_timeout_seconds
        if self._clock() >= self._deadline:
            logger.error(
                "run_poll_timeout", run_id=run_id, timeout=self.config.run_timeout_seconds
            )
            raise RunTimeout(run_id, self.config.run_timeout_seconds)


def delta_text(event: dict[str, Any]) -> str:
    """Text carried by a message-delta event, joined across content parts."""
    parts: list[str] = []
    for part in (event.get("delta") or {}).get("content") or []:
        if not isinstance(part, dict) or part.get("type") != "text":
            continue
        value = (part.get("text") or {}).get("value")
        if value:
            parts.append(str(value))
    return "".join(parts)


def _is_pause_or_terminal(status: RunStatus | None) -> bool:
    return status is not None and (status.is_terminal or status is RunStatus.REQUIRES_ACTION)
