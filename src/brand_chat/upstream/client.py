"""Async client for the hosted assistant run API."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
import structlog

from brand_chat.errors import UpstreamUnavailable

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(60.0, connect=10.0)
STREAM_TIMEOUT = httpx.Timeout(None, connect=10.0)


class RunApiClient:
    """Thin wrapper over the thread/run endpoints of the upstream service.

    Every non-success HTTP status and every transport error is raised as
    `UpstreamUnavailable`; callers never see raw `httpx` exceptions.
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str = "https://api.openai.com/v1",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {
            "Content-Type": "application/json",
            "OpenAI-Beta": "assistants=v2",
        }
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        self._base_url = base_url.rstrip("/")
        self._headers = headers

    async def aclose(self) -> None:
        await self._client.aclose()

    async def create_thread(self, metadata: dict[str, str] | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"metadata": metadata} if metadata else {}
        return await self._request("POST", "/threads", json=body)

    async def append_message(self, thread_id: str, text: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/threads/{thread_id}/messages",
            json={"role": "user", "content": text},
        )

    async def create_run(self, thread_id: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", f"/threads/{thread_id}/runs", json=body)

    async def get_run(self, thread_id: str, run_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/threads/{thread_id}/runs/{run_id}")

    async def submit_tool_outputs(
        self, thread_id: str, run_id: str, outputs: list[dict[str, str]]
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/threads/{thread_id}/runs/{run_id}/submit_tool_outputs",
            json={"tool_outputs": outputs},
        )

    async def list_messages(self, thread_id: str, *, limit: int = 10) -> list[dict[str, Any]]:
        payload = await self._request(
            "GET",
            f"/threads/{thread_id}/messages",
            params={"order": "desc", "limit": limit},
        )
        data = payload.get("data", [])
        return data if isinstance(data, list) else []

    async def latest_assistant_text(self, thread_id: str, *, limit: int = 10) -> str:
        messages = await self.list_messages(thread_id, limit=limit)
        for message in messages:
            if message.get("role") == "assistant":
                return message_text(message)
        return ""

    @asynccontextmanager
    async def stream_run(
        self, thread_id: str, body: dict[str, Any]
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        async with self._stream(
            f"/threads/{thread_id}/runs", {**body, "stream": True}
        ) as chunks:
            yield chunks

    @asynccontextmanager
    async def stream_submit_tool_outputs(
        self, thread_id: str, run_id: str, outputs: list[dict[str, str]]
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        async with self._stream(
            f"/threads/{thread_id}/runs/{run_id}/submit_tool_outputs",
            {"tool_outputs": outputs, "stream": True},
        ) as chunks:
            yield chunks

    @asynccontextmanager
    async def _stream(
        self, path: str, body: dict[str, Any]
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        headers = {**self._headers, "Accept": "text/event-stream"}
        try:
            async with self._client.stream(
                "POST",
                self._base_url + path,
                json=body,
                headers=headers,
                timeout=STREAM_TIMEOUT,
            ) as response:
                if response.is_error:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    raise UpstreamUnavailable(
                        f"Stream start failed {response.status_code}: {detail[:500]}",
                        status=response.status_code,
                    )
                yield response.aiter_bytes()
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(f"Stream transport error on {path}: {exc}") from exc

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(
                method,
                self._base_url + path,
                json=json,
                params=params,
                headers=self._headers,
            )
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(f"{method} {path} transport error: {exc}") from exc

        if response.is_error:
            logger.error(
                "upstream_error",
                method=method,
                path=path,
                status=response.status_code,
                body=response.text[:500],
            )
            raise UpstreamUnavailable(
                f"{method} {path} failed {response.status_code}: {response.text[:500]}",
                status=response.status_code,
            )
        payload = response.json()
        return payload if isinstance(payload, dict) else {"data": payload}


def message_text(message: dict[str, Any]) -> str:
    """Join the text parts of an upstream message object."""
    parts: list[str] = []
    for part in message.get("content") or []:
        if not isinstance(part, dict) or part.get("type") != "text":
            continue
        value = (part.get("text") or {}).get("value")
        if value:
            parts.append(str(value))
    return "\n".join(parts).strip()
