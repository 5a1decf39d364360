"""Reconstruction of tool calls from incremental argument deltas."""

from __future__ import annotations

from typing import Any

from brand_chat.types import ToolCall


class ToolCallAccumulator:
    """Merges tool-call deltas into one record per position index.

    Argument fragments are concatenated in arrival order. The call id, name
    and type are captured from whichever delta carries them (last write
    wins). `drain()` hands over the complete set of pending calls for one
    `requires_action` episode and resets the accumulator, so indices are
    never revisited after resolution.
    """

    def __init__(self) -> None:
        self._calls: dict[int, ToolCall] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def add_delta(self, delta: dict[str, Any]) -> None:
        index = delta.get("index")
        if not isinstance(index, int):
            index = len(self._calls)
        call = self._calls.get(index)
        if call is None:
            call = ToolCall(index=index)
            self._calls[index] = call

        if delta.get("id"):
            call.call_id = str(delta["id"])
        if delta.get("type"):
            call.type = str(delta["type"])
        function = delta.get("function") or {}
        if function.get("name"):
            call.name = str(function["name"])
        fragment = function.get("arguments")
        if fragment:
            call.arguments += str(fragment)

    def add_step_delta(self, event: dict[str, Any]) -> None:
        """Consume a run-step delta event, ignoring steps without tool calls."""
        details = (event.get("delta") or {}).get("step_details") or {}
        for delta in details.get("tool_calls") or []:
            if isinstance(delta, dict):
                self.add_delta(delta)

    def add_required_action(self, run: dict[str, Any]) -> None:
        """Consume the complete tool-call list a polled run reports."""
        required = (run.get("required_action") or {}).get("submit_tool_outputs") or {}
        for position, call in enumerate(required.get("tool_calls") or []):
            if isinstance(call, dict):
                self.add_delta({**call, "index": position})

    def drain(self) -> list[ToolCall]:
        calls = [self._calls[index] for index in sorted(self._calls)]
        self._calls = {}
        return calls
