import json

import pytest

from brand_chat.api.main import build_services
from brand_chat.errors import RunTerminalFailure, UpstreamUnavailable
from brand_chat.orchestration.transports import PollingTransport, StreamingTransport
from brand_chat.retrieval.augmenter import CONTEXT_HEADER
from brand_chat.streaming.channel import ClientChannel
from brand_chat.types import TurnRequest

HANDOFF_ARGS = json.dumps(
    {
        "contact": {"name": "Ayşe Yılmaz", "phone": "05551234567"},
        "matter": {"category": "kiralık"},
        "request": {"summary": "Beşiktaş'ta kiralık 2+1"},
    },
    ensure_ascii=False,
)


def _turn(message: str = "Kiralık daire arıyorum", thread_id: str = "thread_1") -> TurnRequest:
    return TurnRequest(thread_id=thread_id, message=message, brand_key="emlak", visitor_id="v-1")


class _FailingLog:
    async def log_message(self, entry) -> None:
        raise RuntimeError("database unavailable")


@pytest.fixture
def services(settings, upstream, sink, message_log):
    return build_services(
        settings,
        client=upstream.client(),
        email_sink=sink,
        sheets_sink=sink,
        message_log=message_log,
    )


@pytest.mark.asyncio
async def test_streamed_tool_call_is_resolved_and_delivered(services, upstream, events, sink, message_log) -> None:
    upstream.streams = [
        [
            events.run("run_1", "queued"),
            events.tool(0, call_id="call_1", name="submit_handoff", arguments=HANDOFF_ARGS[:20]),
            events.tool(0, arguments=HANDOFF_ARGS[20:]),
            events.run("run_1", "requires_action"),
        ],
        [
            events.run("run_1", "in_progress"),
            events.text("Talebinizi aldım "),
            events.text("ve ekibimize ilettim."),
            events.run("run_1", "completed"),
        ],
    ]

    result = await services.orchestrator.run_turn(_turn(), StreamingTransport(services.client))

    assert result.cleaned_text == "Talebinizi aldım ve ekibimize ilettim."
    assert result.handoff is not None and result.handoff.path == "tool_call"
    assert len(sink.emails) == 1 and len(sink.rows) == 1

    (submitted,) = upstream.bodies("/submit_tool_outputs")
    assert submitted["stream"] is True
    assert submitted["tool_outputs"][0]["tool_call_id"] == "call_1"
    assert json.loads(submitted["tool_outputs"][0]["output"])["success"] is True

    (run_body,) = upstream.bodies("/runs")
    assert run_body["assistant_id"] == "asst_emlak"
    assert run_body["metadata"] == {"brandKey": "emlak"}
    assert [tool["function"]["name"] for tool in run_body["tools"]] == ["submit_handoff"]

    assert [entry.role for entry in message_log.entries] == ["user", "system", "assistant"]
    paths = upstream.paths()
    assert paths.index("POST /v1/threads/thread_1/messages") < paths.index("POST /v1/threads/thread_1/runs")

    record = services.trace_store.get(result.trace_id)
    assert record.run_status == "completed"
    assert record.handoff_outcome == "delivered"
    assert record.tool_calls == ["submit_handoff"]


@pytest.mark.asyncio
async def test_fenced_block_is_delivered_and_stripped(services, upstream, events, sink) -> None:
    block = (
        '```handoff\n{"handoff": "customer_request", "payload": {"contact": {"name": "Ali Veli", '
        '"phone": "0532 111 22 33"}, "request": {"summary": "Arsa talebi"}}}\n```'
    )
    upstream.streams = [
        [
            events.run("run_1", "queued"),
            events.text("Kaydınızı oluşturdum.\n"),
            events.text(block),
            events.run("run_1", "completed"),
        ]
    ]

    result = await services.orchestrator.run_turn(_turn("Arsa bakıyorum"), StreamingTransport(services.client))

    assert result.cleaned_text == "Kaydınızı oluşturdum."
    assert "```" in result.raw_text
    assert result.handoff.path == "fenced_block"
    assert sink.emails[0]["payload"]["contact"]["name"] == "Ali Veli"


@pytest.mark.asyncio
async def test_bad_tool_json_is_reported_back_to_run(services, upstream, events, sink) -> None:
    upstream.streams = [
        [
            events.tool(0, call_id="call_1", name="submit_handoff", arguments='{"contact": '),
            events.run("run_1", "requires_action"),
        ],
        [events.text("Bilgilerinizi tekrar alabilir miyim?"), events.run("run_1", "completed")],
    ]

    result = await services.orchestrator.run_turn(_turn("Merhaba"), StreamingTransport(services.client))

    (submitted,) = upstream.bodies("/submit_tool_outputs")
    output = json.loads(submitted["tool_outputs"][0]["output"])
    assert output["success"] is False
    assert result.handoff is None
    assert sink.emails == []
    record = services.trace_store.get(result.trace_id)
    assert [note.stage for note in record.failures] == ["tool:submit_handoff"]


@pytest.mark.asyncio
async def test_failed_run_surfaces_terminal_failure(services, upstream, events) -> None:
    upstream.streams = [[events.run("run_1", "queued"), events.run("run_1", "failed")]]

    with pytest.raises(RunTerminalFailure):
        await services.orchestrator.run_turn(_turn(), StreamingTransport(services.client))

    (record,) = services.trace_store.list_recent()
    assert record.error.startswith("run_failed")
    assert record.run_status == "failed"


@pytest.mark.asyncio
async def test_stream_ending_without_terminal_status_fails(services, upstream, events) -> None:
    upstream.streams = [[events.run("run_1", "in_progress"), events.text("Yarım")]]

    with pytest.raises(UpstreamUnavailable):
        await services.orchestrator.run_turn(_turn(), StreamingTransport(services.client))


@pytest.mark.asyncio
async def test_polled_turn_with_failing_logger_still_returns(settings, upstream, sink) -> None:
    failing_log = _FailingLog()
    services = build_services(
        settings, client=upstream.client(), email_sink=sink, sheets_sink=sink, message_log=failing_log
    )
    upstream.runs = [{"id": "run_7", "status": "queued"}, {"id": "run_7", "status": "completed"}]
    upstream.assistant_text = "Size nasıl yardımcı olabilirim?"

    result = await services.orchestrator.run_turn(
        _turn("Merhaba"), PollingTransport(services.client, settings.run)
    )

    assert result.cleaned_text == "Size nasıl yardımcı olabilirim?"
    record = services.trace_store.get(result.trace_id)
    assert [note.stage for note in record.failures] == ["message_log:user", "message_log:assistant"]
    assert record.transport == "poll"
    assert record.run_ids == ["run_7"]


@pytest.mark.asyncio
async def test_disconnected_client_still_drains_run_and_delivers(services, upstream, events, sink) -> None:
    channel = ClientChannel()
    channel.disconnect()
    upstream.streams = [
        [
            events.run("run_1", "queued"),
            events.text("Bir saniye, "),
            events.tool(0, call_id="call_1", name="submit_handoff", arguments=HANDOFF_ARGS),
            events.run("run_1", "requires_action"),
        ],
        [
            events.run("run_1", "in_progress"),
            events.text("talebinizi ilettim."),
            events.run("run_1", "completed"),
        ],
    ]

    result = await services.orchestrator.run_turn(
        _turn(), StreamingTransport(services.client, channel)
    )

    assert upstream.streams == []
    assert len(upstream.bodies("/submit_tool_outputs")) == 1
    assert result.handoff is not None and result.handoff.path == "tool_call"
    assert len(sink.emails) == 1 and len(sink.rows) == 1
    assert channel.frames_dropped == 2
    assert result.raw_text == "Bir saniye, talebinizi ilettim."



@pytest.mark.asyncio
async def test_brand_knowledge_reaches_run_instructions(settings, upstream, events, sink, message_log) -> None:
    settings.brands["emlak"].knowledge = ["Kiralık dairelerde depozito iki kira bedelidir."]
    services = build_services(
        settings, client=upstream.client(), email_sink=sink, sheets_sink=sink, message_log=message_log
    )
    upstream.streams = [[events.text("İki kira bedeli."), events.run("run_1", "completed")]]

    await services.orchestrator.run_turn(
        _turn("Depozito ne kadar kira?"), StreamingTransport(services.client)
    )

    (run_body,) = upstream.bodies("/runs")
    assert CONTEXT_HEADER in run_body["instructions"]
    assert "depozito iki kira bedelidir" in run_body["instructions"]
