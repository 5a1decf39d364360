"""Interfaces of external collaborators and their default adapters."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Protocol

import httpx
import structlog

from brand_chat.config import BrandConfig
from brand_chat.errors import SinkDeliveryError
from brand_chat.types import KnowledgeChunk

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class MessageLogEntry:
    brand_key: str
    thread_id: str
    role: str
    text: str
    raw_text: str | None = None
    handoff: dict[str, Any] | None = None
    visitor_id: str | None = None
    session_id: str | None = None
    source: Any = None
    meta: Any = None


class MessageLog(Protocol):
    async def log_message(self, entry: MessageLogEntry) -> None:
        """Persist one conversation message."""


class KnowledgeSearch(Protocol):
    async def search(self, brand_key: str, query: str) -> list[KnowledgeChunk]:
        """Return relevant chunks, most relevant first; possibly empty."""


class EmailSink(Protocol):
    async def send_handoff_email(
        self,
        *,
        brand_key: str,
        kind: str,
        payload: dict[str, Any],
        brand: BrandConfig,
    ) -> None:
        """Notify the brand's team about a new lead."""


class SheetsSink(Protocol):
    async def push_handoff_to_sheets(self, row: dict[str, Any]) -> None:
        """Append a lead row to the brand's spreadsheet."""


class StructlogMessageLog:
    """Message log that writes entries to the structured log stream."""

    async def log_message(self, entry: MessageLogEntry) -> None:
        logger.info("chat_message", **asdict(entry))


class LogOnlyHandoffSink:
    """Email and spreadsheet sink used when no real channel is configured."""

    def __init__(self, default_email_to: str | None = None) -> None:
        self.default_email_to = default_email_to

    async def send_handoff_email(
        self,
        *,
        brand_key: str,
        kind: str,
        payload: dict[str, Any],
        brand: BrandConfig,
    ) -> None:
        logger.info(
            "handoff_email",
            brand_key=brand_key,
            kind=kind,
            to=brand.email_to or self.default_email_to,
            subject=f"{brand.subject_prefix or '[' + brand.display_name(brand_key) + ']'} {kind}",
            contact=payload.get("contact", {}).get("name", ""),
        )

    async def push_handoff_to_sheets(self, row: dict[str, Any]) -> None:
        logger.info("handoff_sheet_row", brand_key=row.get("brandKey"), thread_id=row.get("threadId"))


class WebhookSheetsSink:
    """Pushes lead rows to a spreadsheet webhook (e.g. an Apps Script endpoint)."""

    def __init__(self, url: str, *, http_client: httpx.AsyncClient | None = None) -> None:
        self.url = url
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(15.0))

    async def push_handoff_to_sheets(self, row: dict[str, Any]) -> None:
        try:
            response = await self._client.post(self.url, json=row)
        except httpx.HTTPError as exc:
            raise SinkDeliveryError("sheets", str(exc)) from exc
        if response.is_error:
            raise SinkDeliveryError("sheets", f"status {response.status_code}: {response.text[:200]}")

    async def aclose(self) -> None:
        await self._client.aclose()
