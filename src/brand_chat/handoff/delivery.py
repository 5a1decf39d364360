"""Shared gate-and-deliver pipeline for handoff candidates."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import structlog

from brand_chat.collaborators import EmailSink, SheetsSink
from brand_chat.config import BrandConfig
from brand_chat.handoff.gate import HandoffGate
from brand_chat.obs.tracing import TurnRecord
from brand_chat.types import Handoff, HandoffCandidate, TurnRequest

logger = structlog.get_logger(__name__)


class HandoffPipeline:
    """Passes every candidate through the gate, then fans out to the sinks.

    Sinks are independent: each failure is logged and recorded on the turn
    trace, and never prevents the other sink or the user-visible reply.
    """

    def __init__(
        self,
        *,
        gate: HandoffGate,
        email_sink: EmailSink,
        sheets_sink: SheetsSink,
    ) -> None:
        self.gate = gate
        self.email_sink = email_sink
        self.sheets_sink = sheets_sink

    async def process(
        self,
        candidate: HandoffCandidate,
        *,
        turn: TurnRequest,
        brand: BrandConfig,
        record: TurnRecord,
    ) -> Handoff | None:
        handoff, outcome = await self.gate.admit(turn.thread_id, candidate, brand)
        record.handoff_path = candidate.path
        if handoff is None:
            record.handoff_outcome = outcome
            return None

        record.handoff_outcome = "delivered"
        failures = await self.deliver(handoff, turn=turn, brand=brand)
        record.sink_failures.extend(failures)
        logger.info(
            "handoff_sent",
            thread_id=turn.thread_id,
            brand_key=turn.brand_key,
            kind=handoff.kind,
            path=handoff.path,
            sink_failures=len(failures),
        )
        return handoff

    async def deliver(
        self, handoff: Handoff, *, turn: TurnRequest, brand: BrandConfig
    ) -> list[str]:
        results = await asyncio.gather(
            self._send_email(handoff, turn, brand),
            self._push_sheets(handoff, turn),
        )
        return [failure for failure in results if failure]

    async def _send_email(
        self, handoff: Handoff, turn: TurnRequest, brand: BrandConfig
    ) -> str | None:
        try:
            await self.email_sink.send_handoff_email(
                brand_key=turn.brand_key,
                kind=handoff.kind,
                payload=handoff.payload,
                brand=brand,
            )
        except Exception as exc:
            logger.error("handoff_email_failed", thread_id=turn.thread_id, error=str(exc))
            return f"email: {exc}"
        return None

    async def _push_sheets(self, handoff: Handoff, turn: TurnRequest) -> str | None:
        try:
            await self.sheets_sink.push_handoff_to_sheets(sheet_row(handoff, turn))
        except Exception as exc:
            logger.error("handoff_sheets_failed", thread_id=turn.thread_id, error=str(exc))
            return f"sheets: {exc}"
        return None


def sheet_row(handoff: Handoff, turn: TurnRequest) -> dict[str, Any]:
    meeting = handoff.payload.get("preferred_meeting", {})
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "brandKey": turn.brand_key,
        "kind": handoff.kind,
        "threadId": turn.thread_id,
        "visitorId": turn.visitor_id,
        "sessionId": turn.session_id,
        "source": turn.source,
        "meta": turn.meta,
        "payload": handoff.payload,
        "meeting_mode": meeting.get("mode", ""),
        "meeting_date": meeting.get("date", ""),
        "meeting_time": meeting.get("time", ""),
    }
