"""Turn tracing and failure accounting."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class FailureNote:
    stage: str
    detail: str


@dataclass(slots=True)
class TurnRecord:
    trace_id: str
    timestamp_utc: str
    thread_id: str
    brand_key: str
    transport: str
    run_ids: list[str] = field(default_factory=list)
    run_status: str | None = None
    tool_calls: list[str] = field(default_factory=list)
    handoff_path: str | None = None
    handoff_outcome: str = "none"
    sink_failures: list[str] = field(default_factory=list)
    failures: list[FailureNote] = field(default_factory=list)
    error: str | None = None
    latency_ms: float = 0.0

    def note_failure(self, stage: str, detail: str) -> None:
        """Record a swallowed failure so it stays diagnosable."""
        self.failures.append(FailureNote(stage=stage, detail=detail))
        logger.warning(
            "turn_failure_swallowed",
            trace_id=self.trace_id,
            thread_id=self.thread_id,
            stage=stage,
            detail=detail,
        )

    def note_run(self, run_id: str | None) -> None:
        if run_id and run_id not in self.run_ids:
            self.run_ids.append(run_id)


class TraceStore:
    """In-memory turn trace storage for API-level observability."""

    def __init__(self, *, max_records: int = 1000) -> None:
        self._records: dict[str, TurnRecord] = {}
        self._max_records = max_records

    def open(self, *, thread_id: str, brand_key: str, transport: str) -> TurnRecord:
        record = TurnRecord(
            trace_id=str(uuid.uuid4()),
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            thread_id=thread_id,
            brand_key=brand_key,
            transport=transport,
        )
        self._records[record.trace_id] = record
        while len(self._records) > self._max_records:
            self._records.pop(next(iter(self._records)))
        return record

    def get(self, trace_id: str) -> TurnRecord:
        record = self._records.get(trace_id)
        if record is None:
            raise KeyError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[TurnRecord]:
        return list(self._records.values())[-limit:]

    def summary(self) -> dict[str, float | int]:
        """Aggregate turn metrics for dashboard display."""
        records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_turns": 0,
                "failed_turns": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "handoffs_delivered": 0,
                "duplicates_suppressed": 0,
                "swallowed_failures": 0,
                "sink_failures": 0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        return {
            "total_turns": total,
            "failed_turns": sum(1 for record in records if record.error),
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "handoffs_delivered": sum(
                1 for record in records if record.handoff_outcome == "delivered"
            ),
            "duplicates_suppressed": sum(
                1 for record in records if record.handoff_outcome == "duplicate"
            ),
            "swallowed_failures": sum(len(record.failures) for record in records),
            "sink_failures": sum(len(record.sink_failures) for record in records),
        }


class Timer:
    """Simple context timer used by the orchestrator."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0
