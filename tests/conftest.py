import json
from typing import Any

import httpx
import pytest

from brand_chat.config import AppSettings, BrandConfig, RunConfig
from brand_chat.upstream.client import RunApiClient

UPSTREAM_BASE = "https://upstream.test/v1"


class UpstreamEvents:
    """Builders for upstream stream records."""

    @staticmethod
    def run(run_id: str, status: str) -> dict[str, Any]:
        return {"object": "thread.run", "id": run_id, "status": status}

    @staticmethod
    def text(value: str) -> dict[str, Any]:
        return {
            "object": "thread.message.delta",
            "delta": {"content": [{"index": 0, "type": "text", "text": {"value": value}}]},
        }

    @staticmethod
    def tool(
        index: int,
        *,
        call_id: str | None = None,
        name: str | None = None,
        arguments: str | None = None,
    ) -> dict[str, Any]:
        call: dict[str, Any] = {"index": index, "type": "function", "function": {}}
        if call_id:
            call["id"] = call_id
        if name:
            call["function"]["name"] = name
        if arguments is not None:
            call["function"]["arguments"] = arguments
        return {
            "object": "thread.run.step.delta",
            "delta": {"step_details": {"type": "tool_calls", "tool_calls": [call]}},
        }

    @staticmethod
    def body(events: list[dict[str, Any]]) -> bytes:
        lines = []
        for event in events:
            lines.append(f"event: {event.get('object', 'message')}\n")
            lines.append(f"data: {json.dumps(event, ensure_ascii=False)}\n\n")
        lines.append("data: [DONE]\n\n")
        return "".join(lines).encode("utf-8")


class FakeUpstream:
    """Scripted stand-in for the hosted run API behind an httpx MockTransport."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.streams: list[list[dict[str, Any]]] = []
        self.runs: list[dict[str, Any]] = []
        self.assistant_text = ""
        self.stream_status = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        body = json.loads(request.content) if request.content else {}

        if request.method == "POST" and path.endswith("/threads"):
            return httpx.Response(200, json={"id": "thread_new", "metadata": body.get("metadata")})
        if path.endswith("/messages"):
            if request.method == "POST":
                return httpx.Response(200, json={"id": "msg_user", "role": "user"})
            return httpx.Response(
                200,
                json={
                    "data": [
                        {"role": "user", "content": [{"type": "text", "text": {"value": "?"}}]},
                        {
                            "role": "assistant",
                            "content": [{"type": "text", "text": {"value": self.assistant_text}}],
                        },
                    ]
                },
            )
        if body.get("stream"):
            if self.stream_status != 200:
                return httpx.Response(self.stream_status, text="upstream exploded")
            return httpx.Response(
                200,
                headers={"Content-Type": "text/event-stream"},
                content=UpstreamEvents.body(self.streams.pop(0)),
            )
        return httpx.Response(200, json=self.runs.pop(0))

    def client(self) -> RunApiClient:
        return RunApiClient(
            api_key="test-key",
            base_url=UPSTREAM_BASE,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(self.handler)),
        )

    def paths(self) -> list[str]:
        return [f"{request.method} {request.url.path}" for request in self.requests]

    def bodies(self, suffix: str) -> list[dict[str, Any]]:
        return [
            json.loads(request.content)
            for request in self.requests
            if request.url.path.endswith(suffix) and request.content
        ]


class RecordingSink:
    def __init__(self, *, fail_email: bool = False, fail_sheets: bool = False) -> None:
        self.emails: list[dict[str, Any]] = []
        self.rows: list[dict[str, Any]] = []
        self.fail_email = fail_email
        self.fail_sheets = fail_sheets

    async def send_handoff_email(self, **kwargs: Any) -> None:
        if self.fail_email:
            raise RuntimeError("smtp down")
        self.emails.append(kwargs)

    async def push_handoff_to_sheets(self, row: dict[str, Any]) -> None:
        if self.fail_sheets:
            raise RuntimeError("sheets down")
        self.rows.append(row)


class RecordingMessageLog:
    def __init__(self) -> None:
        self.entries: list[Any] = []

    async def log_message(self, entry: Any) -> None:
        self.entries.append(entry)


@pytest.fixture
def events() -> type[UpstreamEvents]:
    return UpstreamEvents


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def message_log() -> RecordingMessageLog:
    return RecordingMessageLog()


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings(
        openai_api_key="test-key",
        openai_base=UPSTREAM_BASE,
        assistant_id="asst_default",
        brands={
            "emlak": BrandConfig(label="Örnek Emlak", assistant_id="asst_emlak"),
        },
        run=RunConfig(
            poll_interval_seconds=0.01,
            run_timeout_seconds=5.0,
            keepalive_interval_seconds=30.0,
        ),
    )
