import json

import pytest
from fastapi.testclient import TestClient

from brand_chat.api.main import EMPTY_REPLY_PLACEHOLDER, create_app

SCENARIO_A = {
    "threadId": "thread_1",
    "message": "Satılık daire arıyorum\nİletişim: Ayşe Yılmaz, 05551234567",
    "brandKey": "emlak",
    "visitorId": "visitor-42",
    "source": "widget",
}


@pytest.fixture
def api(settings, upstream, sink, message_log):
    app = create_app(
        settings,
        client=upstream.client(),
        email_sink=sink,
        sheets_sink=sink,
        message_log=message_log,
    )
    with TestClient(app) as client:
        yield client


def _completed_poll(upstream, run_id: str) -> None:
    upstream.runs.extend([{"id": run_id, "status": "queued"}, {"id": run_id, "status": "completed"}])


def _data_records(body: str) -> list[str]:
    return [line[6:] for line in body.split("\n") if line.startswith("data: ")]


def test_scenario_a_heuristic_handoff_delivered_once(api, upstream, sink, message_log) -> None:
    _completed_poll(upstream, "run_1")
    upstream.assistant_text = "Talebinizi aldım ve ekibimize ilettim."

    response = api.post("/chat/message", json=SCENARIO_A)

    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "threadId": "thread_1",
        "message": "Talebinizi aldım ve ekibimize ilettim.",
        "handoff": {"kind": "customer_request"},
    }
    assert len(sink.emails) == 1
    assert len(sink.rows) == 1
    assert sink.emails[0]["payload"]["matter"]["category"] == "satılık"
    assert sink.emails[0]["payload"]["contact"]["phone"] == "05551234567"
    assert sink.rows[0]["visitorId"] == "visitor-42"
    assert message_log.entries[-1].handoff["kind"] == "customer_request"


def test_scenario_b_repeat_on_same_thread_is_suppressed(api, upstream, sink) -> None:
    _completed_poll(upstream, "run_1")
    _completed_poll(upstream, "run_2")
    upstream.assistant_text = "Talebinizi aldım ve ekibimize ilettim."

    first = api.post("/chat/message", json=SCENARIO_A)
    second = api.post("/chat/message", json=SCENARIO_A)

    assert first.json()["handoff"] == {"kind": "customer_request"}
    assert second.status_code == 200
    assert second.json()["handoff"] is None
    assert second.json()["message"] == "Talebinizi aldım ve ekibimize ilettim."
    assert len(sink.emails) == 1
    assert len(sink.rows) == 1
    assert api.get("/metrics").json()["duplicates_suppressed"] == 1


@pytest.mark.parametrize("endpoint", ["/chat/message", "/chat/stream"])
@pytest.mark.parametrize("brand_key", ["unknown-brand", None])
def test_scenario_c_unknown_brand_rejected_without_upstream_calls(api, upstream, endpoint, brand_key) -> None:
    payload = {**SCENARIO_A, "brandKey": brand_key}

    response = api.post(endpoint, json=payload)

    assert response.status_code == 403
    assert response.json()["error"] == "unknown_brand"
    assert upstream.requests == []


@pytest.mark.parametrize("endpoint", ["/chat/message", "/chat/stream"])
def test_missing_params_rejected_before_brand_check(api, upstream, endpoint) -> None:
    response = api.post(endpoint, json={"threadId": "thread_1"})

    assert response.status_code == 400
    assert response.json()["error"] == "missing_params"
    assert upstream.requests == []


def test_stream_relays_deltas_then_summary_and_done(api, upstream, events) -> None:
    upstream.streams = [
        [
            events.run("run_1", "queued"),
            events.text("Merhaba! "),
            events.text("Size nasıl yardımcı olabilirim?"),
            events.run("run_1", "completed"),
        ]
    ]

    response = api.post(
        "/chat/stream",
        json={"threadId": "thread_1", "message": "Selam", "brandKey": "emlak"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache, no-transform"
    assert response.headers["x-accel-buffering"] == "no"

    records = _data_records(response.text)
    assert records[-1] == "[DONE]"
    relayed = [json.loads(record) for record in records[:-1]]
    assert relayed[0] == events.text("Merhaba! ")
    assert relayed[1] == events.text("Size nasıl yardımcı olabilirim?")
    assert relayed[2] == {
        "object": "turn.summary",
        "message": "Merhaba! Size nasıl yardımcı olabilirim?",
        "handoff": None,
    }


def test_stream_failure_emits_error_then_done(api, upstream) -> None:
    upstream.stream_status = 500

    response = api.post(
        "/chat/stream",
        json={"threadId": "thread_1", "message": "Selam", "brandKey": "emlak"},
    )

    records = _data_records(response.text)
    assert json.loads(records[0])["error"] == "stream_failed"
    assert records[1:] == ["[DONE]"]


def test_terminal_run_failure_returns_message_failed(api, upstream) -> None:
    upstream.runs.append({"id": "run_1", "status": "failed"})

    response = api.post("/chat/message", json={**SCENARIO_A, "message": "Merhaba"})

    assert response.status_code == 500
    assert response.json()["error"] == "message_failed"
    assert "failed" in response.json()["detail"]


def test_empty_reply_uses_placeholder_and_sink_failure_is_isolated(settings, upstream) -> None:
    class _FlakySink:
        def __init__(self) -> None:
            self.emails: list[dict] = []

        async def send_handoff_email(self, **kwargs) -> None:
            self.emails.append(kwargs)

        async def push_handoff_to_sheets(self, row: dict) -> None:
            raise RuntimeError("sheets down")

    flaky = _FlakySink()
    app = create_app(settings, client=upstream.client(), email_sink=flaky, sheets_sink=flaky)
    _completed_poll(upstream, "run_1")
    upstream.assistant_text = '```handoff\n{"contact": {"name": "Ali Veli", "phone": "05321112233"}, "request": {"summary": "Arsa"}}\n```'

    with TestClient(app) as client:
        response = client.post("/chat/message", json={**SCENARIO_A, "message": "Arsa"})
        trace = client.get("/traces").json()["items"][-1]

    assert response.json()["message"] == EMPTY_REPLY_PLACEHOLDER
    assert response.json()["handoff"] == {"kind": "customer_request"}
    assert len(flaky.emails) == 1
    assert trace["sink_failures"] == ["sheets: sheets down"]


def test_init_creates_tagged_thread(api, upstream) -> None:
    response = api.post("/chat/init", json={"brandKey": "emlak"})

    assert response.status_code == 200
    assert response.json() == {"threadId": "thread_new", "brandKey": "emlak"}
    assert upstream.bodies("/threads") == [{"metadata": {"brandKey": "emlak"}}]
    assert api.post("/chat/init", json={"brandKey": "nope"}).status_code == 403


def test_health_and_trace_lookup(api) -> None:
    health = api.get("/health").json()

    assert health["status"] == "ok"
    assert health["brands"] == 1
    assert health["api_key_configured"] is True
    assert api.get("/traces/missing").status_code == 404
