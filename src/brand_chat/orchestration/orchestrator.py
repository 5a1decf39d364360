"""Per-turn run orchestration shared by the streaming and polling paths."""

from __future__ import annotations

import structlog

from brand_chat.agent.registry import ToolContext, ToolRegistry
from brand_chat.brands import BrandRegistry, build_run_instructions
from brand_chat.collaborators import MessageLog, MessageLogEntry
from brand_chat.config import BrandConfig
from brand_chat.errors import (
    RunTerminalFailure,
    UnknownBrand,
    UpstreamUnavailable,
)
from brand_chat.handoff.delivery import HandoffPipeline
from brand_chat.handoff.extractor import (
    ExtractionContext,
    HandoffExtractor,
    has_contact_intent,
    strip_fenced,
)
from brand_chat.obs.tracing import Timer, TraceStore, TurnRecord
from brand_chat.orchestration.transports import RunTransport
from brand_chat.retrieval.augmenter import ContextAugmenter
from brand_chat.types import Handoff, RunEpisode, RunStatus, TurnRequest, TurnResult
from brand_chat.upstream.client import RunApiClient

logger = structlog.get_logger(__name__)


class RunOrchestrator:
    """Executes exactly one conversational turn against a thread.

    The state machine lives here once; a `RunTransport` only supplies the
    suspend/resume primitive (stream reads or status polls). Logging and
    sink failures are recorded on the turn trace and never fail the turn.
    """

    def __init__(
        self,
        *,
        client: RunApiClient,
        brands: BrandRegistry,
        registry: ToolRegistry,
        extractor: HandoffExtractor,
        pipeline: HandoffPipeline,
        augmenter: ContextAugmenter,
        message_log: MessageLog,
        trace_store: TraceStore,
        default_assistant_id: str | None = None,
    ) -> None:
        self.client = client
        self.brands = brands
        self.registry = registry
        self.extractor = extractor
        self.pipeline = pipeline
        self.augmenter = augmenter
        self.message_log = message_log
        self.trace_store = trace_store
        self.default_assistant_id = default_assistant_id

    async def run_turn(self, turn: TurnRequest, transport: RunTransport) -> TurnResult:
        brand = self.brands.get(turn.brand_key)
        if brand is None:
            raise UnknownBrand("brandKey not allowed or missing")

        record = self.trace_store.open(
            thread_id=turn.thread_id, brand_key=turn.brand_key, transport=transport.name
        )
        timer = Timer()
        with structlog.contextvars.bound_contextvars(
            trace_id=record.trace_id, thread_id=turn.thread_id, brand_key=turn.brand_key
        ):
            try:
                with timer:
                    return await self._execute(turn, brand, transport, record)
            except Exception as exc:
                record.error = f"{getattr(exc, 'code', type(exc).__name__)}: {exc}"
                logger.error("turn_failed", transport=transport.name, error=record.error)
                raise
            finally:
                record.latency_ms = timer.elapsed_ms

    async def _execute(
        self,
        turn: TurnRequest,
        brand: BrandConfig,
        transport: RunTransport,
        record: TurnRecord,
    ) -> TurnResult:
        await self._log(
            self._entry(turn, role="user", text=turn.message, raw_text=turn.message), record
        )
        await self.client.append_message(turn.thread_id, turn.message)

        instructions = build_run_instructions(turn.brand_key, brand)
        instructions = await self.augmenter.augment(
            instructions, brand_key=turn.brand_key, query=turn.message, record=record
        )
        body = {
            "assistant_id": brand.assistant_id or self.default_assistant_id,
            "instructions": instructions,
            "tools": self.registry.declarations(brand.tools),
            "metadata": {"brandKey": turn.brand_key},
        }

        context = ToolContext(turn=turn, brand=brand, record=record)
        episode = await transport.start(turn.thread_id, body, record)
        texts = [episode.text]
        while episode.status is RunStatus.REQUIRES_ACTION:
            if not episode.tool_calls:
                raise UpstreamUnavailable(
                    f"Run {episode.run_id} requires action but reported no tool calls"
                )
            outputs = [await self.registry.execute(call, context) for call in episode.tool_calls]
            episode = await transport.submit(turn.thread_id, episode.run_id, outputs, record)
            texts.append(episode.text)

        self._check_terminal(episode, record)
        raw_text = transport.text_separator.join(text for text in texts if text)

        handoff = context.handoff
        if not context.handoff_attempted:
            handoff = await self._handoff_from_text(turn, brand, raw_text, record)
        if handoff is None and has_contact_intent(turn.message):
            logger.warning("handoff_missed_contact_intent", raw_text=raw_text[:500])

        cleaned = strip_fenced(raw_text)
        await self._log(
            self._entry(
                turn,
                role="assistant",
                text=cleaned,
                raw_text=raw_text,
                handoff={"kind": handoff.kind, "payload": handoff.payload} if handoff else None,
            ),
            record,
        )
        logger.info(
            "turn_completed",
            run_ids=record.run_ids,
            tool_calls=len(record.tool_calls),
            handoff_outcome=record.handoff_outcome,
        )
        return TurnResult(
            cleaned_text=cleaned, raw_text=raw_text, handoff=handoff, trace_id=record.trace_id
        )

    async def _handoff_from_text(
        self, turn: TurnRequest, brand: BrandConfig, raw_text: str, record: TurnRecord
    ) -> Handoff | None:
        candidate = self.extractor.extract(
            ExtractionContext(user_text=turn.message, raw_text=raw_text)
        )
        if candidate is None:
            return None
        return await self.pipeline.process(candidate, turn=turn, brand=brand, record=record)

    @staticmethod
    def _check_terminal(episode: RunEpisode, record: TurnRecord) -> None:
        status = episode.status
        record.run_status = status.value if status else None
        if status is RunStatus.COMPLETED:
            return
        if status is not None and status.is_failure:
            raise RunTerminalFailure(episode.run_id, status.value)
        raise UpstreamUnavailable(
            f"Run {episode.run_id} ended without a terminal status "
            f"({status.value if status else 'unknown'})"
        )

    async def _log(self, entry: MessageLogEntry, record: TurnRecord) -> None:
        try:
            await self.message_log.log_message(entry)
        except Exception as exc:
            record.note_failure(f"message_log:{entry.role}", str(exc))

    @staticmethod
    def _entry(turn: TurnRequest, **fields: object) -> MessageLogEntry:
        return MessageLogEntry(
            brand_key=turn.brand_key,
            thread_id=turn.thread_id,
            visitor_id=turn.visitor_id,
            session_id=turn.session_id,
            source=turn.source,
            meta=turn.meta,
            **fields,
        )
