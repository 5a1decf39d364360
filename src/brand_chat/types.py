"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class RunStatus(str, Enum):
    """Upstream run lifecycle states."""

    CREATED = "created"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    REQUIRES_ACTION = "requires_action"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    INCOMPLETE = "incomplete"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @classmethod
    def parse(cls, value: Any) -> "RunStatus | None":
        try:
            return cls(str(value))
        except ValueError:
            return None

    @property
    def is_failure(self) -> bool:
        return self in _FAILURE_STATES

    @property
    def is_terminal(self) -> bool:
        return self is RunStatus.COMPLETED or self in _FAILURE_STATES


_FAILURE_STATES = frozenset(
    {RunStatus.FAILED, RunStatus.CANCELLED, RunStatus.EXPIRED, RunStatus.INCOMPLETE}
)


@dataclass(slots=True)
class TurnRequest:
    """One user turn as received from a client."""

    thread_id: str
    message: str
    brand_key: str
    visitor_id: str | None = None
    session_id: str | None = None
    source: Any = None
    meta: Any = None


@dataclass(slots=True)
class KnowledgeChunk:
    """A retrieval result used to ground the run instructions."""

    content: str
    score: float
    source_ref: str


@dataclass(slots=True)
class ToolCall:
    """A tool invocation reconstructed from argument deltas."""

    index: int
    call_id: str | None = None
    name: str | None = None
    type: str = "function"
    arguments: str = ""


@dataclass(slots=True)
class ToolOutput:
    """Output submitted back to a run for one tool call."""

    call_id: str
    output: str

    def as_payload(self) -> dict[str, str]:
        return {"tool_call_id": self.call_id, "output": self.output}


@dataclass(slots=True)
class HandoffCandidate:
    """A handoff payload produced by one extraction path."""

    kind: str
    payload: dict[str, Any]
    path: str


@dataclass(slots=True)
class Handoff:
    """A sanitized handoff that passed the gate."""

    kind: str
    payload: dict[str, Any]
    path: str
    fingerprint: str


@dataclass(slots=True)
class RunEpisode:
    """Outcome of driving a run until it pauses or terminates."""

    run_id: str | None
    status: RunStatus | None
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass(slots=True)
class TurnResult:
    """Result returned to the client after one full turn."""

    cleaned_text: str
    raw_text: str
    handoff: Handoff | None
    trace_id: str

    def handoff_summary(self) -> dict[str, str] | None:
        if self.handoff is None:
            return None
        return {"kind": self.handoff.kind}
