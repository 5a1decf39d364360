"""FastAPI entrypoint for chat, trace and health endpoints."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from brand_chat.agent.registry import ToolRegistry
from brand_chat.agent.tools import register_builtin_tools
from brand_chat.brands import BrandRegistry
from brand_chat.collaborators import (
    EmailSink,
    KnowledgeSearch,
    LogOnlyHandoffSink,
    MessageLog,
    SheetsSink,
    StructlogMessageLog,
    WebhookSheetsSink,
)
from brand_chat.config import AppSettings
from brand_chat.errors import ChatError, InvalidRequest, UnknownBrand
from brand_chat.handoff.delivery import HandoffPipeline
from brand_chat.handoff.extractor import HandoffExtractor
from brand_chat.handoff.gate import DedupStore, HandoffGate, InMemoryDedupStore
from brand_chat.obs.logging import setup_logging
from brand_chat.obs.tracing import TraceStore
from brand_chat.orchestration.orchestrator import RunOrchestrator
from brand_chat.orchestration.transports import PollingTransport, StreamingTransport
from brand_chat.retrieval.augmenter import ContextAugmenter
from brand_chat.retrieval.retriever import KnowledgeRetriever
from brand_chat.streaming.channel import ClientChannel
from brand_chat.types import TurnRequest
from brand_chat.upstream.client import RunApiClient

logger = structlog.get_logger(__name__)

EMPTY_REPLY_PLACEHOLDER = "(Yanıt metni bulunamadı)"
SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    thread_id: str | None = Field(default=None, alias="threadId")
    message: str | None = None
    brand_key: str | None = Field(default=None, alias="brandKey")
    visitor_id: str | None = Field(default=None, alias="visitorId")
    session_id: str | None = Field(default=None, alias="sessionId")
    source: Any = None
    meta: Any = None


class InitRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    brand_key: str | None = Field(default=None, alias="brandKey")


@dataclass(slots=True)
class ChatServices:
    """Long-lived collaborators shared by every request of one app."""

    settings: AppSettings
    client: RunApiClient
    brands: BrandRegistry
    orchestrator: RunOrchestrator
    trace_store: TraceStore
    closers: list[Any] = field(default_factory=list)
    background: set[asyncio.Task[None]] = field(default_factory=set)


def build_services(
    settings: AppSettings,
    *,
    client: RunApiClient | None = None,
    knowledge: KnowledgeSearch | None = None,
    message_log: MessageLog | None = None,
    email_sink: EmailSink | None = None,
    sheets_sink: SheetsSink | None = None,
    dedup_store: DedupStore | None = None,
) -> ChatServices:
    """Wire the orchestrator and its collaborators from settings."""

    closers: list[Any] = []
    if client is None:
        client = RunApiClient(api_key=settings.openai_api_key, base_url=settings.openai_base)
        closers.append(client)

    log_sink = LogOnlyHandoffSink()
    if sheets_sink is None and settings.sheets_webhook_url:
        webhook = WebhookSheetsSink(settings.sheets_webhook_url)
        closers.append(webhook)
        sheets_sink = webhook

    message_log = message_log or StructlogMessageLog()
    pipeline = HandoffPipeline(
        gate=HandoffGate(dedup_store or InMemoryDedupStore(settings.dedup_capacity)),
        email_sink=email_sink or log_sink,
        sheets_sink=sheets_sink or log_sink,
    )
    extractor = HandoffExtractor()
    registry = ToolRegistry()
    register_builtin_tools(
        registry, extractor=extractor, pipeline=pipeline, message_log=message_log
    )

    if knowledge is None:
        retriever = KnowledgeRetriever(config=settings.retrieval)
        retriever.seed_brands(settings.brands)
        knowledge = retriever

    brands = BrandRegistry(settings.brands)
    trace_store = TraceStore()
    orchestrator = RunOrchestrator(
        client=client,
        brands=brands,
        registry=registry,
        extractor=extractor,
        pipeline=pipeline,
        augmenter=ContextAugmenter(knowledge, settings.retrieval),
        message_log=message_log,
        trace_store=trace_store,
        default_assistant_id=settings.assistant_id,
    )
    return ChatServices(
        settings=settings,
        client=client,
        brands=brands,
        orchestrator=orchestrator,
        trace_store=trace_store,
        closers=closers,
    )


def create_app(settings: AppSettings | None = None, **overrides: Any) -> FastAPI:
    settings = settings or AppSettings.from_env()
    setup_logging(settings.log_level, settings.log_format)
    services = build_services(settings, **overrides)
    if not services.brands.has_any_assistant() and not settings.assistant_id:
        logger.warning("assistant_id_missing", brands=services.brands.keys())

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        if services.background:
            await asyncio.gather(*services.background, return_exceptions=True)
        for closer in services.closers:
            await closer.aclose()

    app = FastAPI(title="Brand Chat Agent", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        logger.warning("request_rejected", path=request.url.path, code=exc.code, detail=exc.detail)
        return JSONResponse(
            status_code=exc.status_code, content={"error": exc.code, "detail": exc.detail}
        )

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "brands": len(services.brands),
            "api_key_configured": bool(settings.openai_api_key),
            "trace_count": len(services.trace_store.list_recent(limit=1000)),
        }

    @app.post("/chat/init")
    async def chat_init(
        payload: InitRequest | None = None,
        brand_key_param: str | None = Query(default=None, alias="brandKey"),
    ) -> dict[str, Any]:
        brand_key = (payload.brand_key if payload else None) or brand_key_param
        if brand_key and services.brands.get(brand_key) is None:
            raise UnknownBrand("brandKey not allowed")
        try:
            thread = await services.client.create_thread(
                {"brandKey": brand_key} if brand_key else None
            )
        except ChatError as exc:
            logger.error("thread_init_failed", error=exc.detail)
            return JSONResponse(
                status_code=500, content={"error": "init_failed", "detail": exc.detail}
            )
        return {"threadId": thread.get("id"), "brandKey": brand_key}

    @app.post("/chat/stream")
    async def chat_stream(request: ChatRequest) -> StreamingResponse:
        turn = _validate(request, services.brands)
        channel = ClientChannel(keepalive_interval=settings.run.keepalive_interval_seconds)
        transport = StreamingTransport(services.client, channel)
        channel.start()

        task = asyncio.create_task(_relay_turn(services.orchestrator, turn, transport, channel))
        services.background.add(task)
        task.add_done_callback(services.background.discard)

        async def _frames() -> AsyncIterator[bytes]:
            try:
                async for frame in channel.frames():
                    yield frame
            finally:
                if not channel.finished:
                    channel.disconnect()

        return StreamingResponse(_frames(), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.post("/chat/message")
    async def chat_message(request: ChatRequest) -> dict[str, Any]:
        turn = _validate(request, services.brands)
        transport = PollingTransport(services.client, settings.run)
        try:
            result = await services.orchestrator.run_turn(turn, transport)
        except Exception as exc:
            detail = exc.detail if isinstance(exc, ChatError) else str(exc)
            return JSONResponse(
                status_code=500, content={"error": "message_failed", "detail": detail}
            )
        return {
            "status": "ok",
            "threadId": turn.thread_id,
            "message": result.cleaned_text or EMPTY_REPLY_PLACEHOLDER,
            "handoff": result.handoff_summary(),
        }

    @app.get("/traces")
    def traces(limit: int = 20) -> dict[str, Any]:
        records = [asdict(record) for record in services.trace_store.list_recent(limit=limit)]
        return {"items": records}

    @app.get("/traces/{trace_id}")
    def trace_detail(trace_id: str) -> dict[str, Any]:
        try:
            record = services.trace_store.get(trace_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return asdict(record)

    @app.get("/metrics")
    def metrics() -> dict[str, Any]:
        return services.trace_store.summary()

    return app


def _validate(request: ChatRequest, brands: BrandRegistry) -> TurnRequest:
    """Reject bad input before any upstream call is made."""
    if not request.thread_id or not request.message:
        raise InvalidRequest("threadId and message are required")
    if brands.get(request.brand_key) is None:
        raise UnknownBrand("brandKey not allowed or missing")
    return TurnRequest(
        thread_id=request.thread_id,
        message=request.message,
        brand_key=request.brand_key or "",
        visitor_id=request.visitor_id,
        session_id=request.session_id,
        source=request.source,
        meta=request.meta,
    )


async def _relay_turn(
    orchestrator: RunOrchestrator,
    turn: TurnRequest,
    transport: StreamingTransport,
    channel: ClientChannel,
) -> None:
    """Run one streamed turn; always ends the channel with `[DONE]`."""
    try:
        result = await orchestrator.run_turn(turn, transport)
    except Exception as exc:
        detail = exc.detail if isinstance(exc, ChatError) else str(exc)
        logger.error("stream_failed", thread_id=turn.thread_id, detail=detail)
        channel.send({"error": "stream_failed", "detail": detail})
    else:
        channel.send(
            {
                "object": "turn.summary",
                "message": result.cleaned_text,
                "handoff": result.handoff_summary(),
            }
        )
    finally:
        channel.send_done()
        channel.finish()


app = create_app()
