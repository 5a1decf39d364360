"""Tool registry built on Pydantic v2 models."""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog
from langchain_core.utils.function_calling import convert_to_openai_tool
from pydantic import BaseModel, ConfigDict, Field

from brand_chat.config import BrandConfig
from brand_chat.errors import ToolExecutionError
from brand_chat.obs.tracing import TurnRecord
from brand_chat.types import Handoff, ToolCall, ToolOutput, TurnRequest

logger = structlog.get_logger(__name__)

RECEIVED_OUTPUT = {"success": True, "message": "Request received and forwarded."}
HANDOFF_INTENT_MARKERS = ("handoff", "lead")


@dataclass(slots=True)
class ToolContext:
    """Turn-scoped state visible to tool handlers."""

    turn: TurnRequest
    brand: BrandConfig
    record: TurnRecord
    handoff: Handoff | None = None
    handoff_attempted: bool = False


ToolHandler = Callable[[BaseModel, ToolContext], Awaitable[dict[str, Any]]]


class ToolSpec(BaseModel):
    """Declarative tool specification for registration and validation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    args_schema: type[BaseModel]
    handler: ToolHandler
    tags: list[str] = Field(default_factory=list)

    def declaration(self) -> dict[str, Any]:
        """Render the function-tool declaration sent with each run."""
        tool = convert_to_openai_tool(self.args_schema)
        tool["function"]["name"] = self.name
        tool["function"]["description"] = self.description
        return tool

    async def invoke(self, payload: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        data = self.args_schema.model_validate(payload)
        return await self.handler(data, context)


def is_handoff_intent(name: str | None) -> bool:
    lowered = (name or "").lower()
    return any(marker in lowered for marker in HANDOFF_INTENT_MARKERS)


class ToolRegistry:
    """Stores tool specs, renders declarations and resolves pending calls."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec

    def declarations(self, names: list[str]) -> list[dict[str, Any]]:
        declared: list[dict[str, Any]] = []
        for name in names:
            spec = self._tools.get(name)
            if spec is None:
                logger.warning("tool_declaration_unknown", tool=name)
                continue
            declared.append(spec.declaration())
        return declared

    def resolve(self, name: str | None) -> ToolSpec | None:
        """Exact name first; any handoff/lead-named call maps to the handoff tool."""
        if name and name in self._tools:
            return self._tools[name]
        if is_handoff_intent(name):
            for spec in self._tools.values():
                if "handoff" in spec.tags:
                    return spec
        return None

    async def execute(self, call: ToolCall, context: ToolContext) -> ToolOutput:
        """Run one pending call; failures become failed outputs, never raises."""

        call_id = call.call_id or f"call_{call.index}"
        context.record.tool_calls.append(call.name or "unknown")
        try:
            arguments = _parse_arguments(call)
            spec = self.resolve(call.name)
            if spec is None:
                logger.info("tool_acknowledged", tool=call.name, call_id=call_id)
                result = RECEIVED_OUTPUT
            else:
                logger.info("tool_executing", tool=call.name, spec=spec.name, call_id=call_id)
                result = await spec.invoke(arguments, context)
        except Exception as exc:
            detail = exc.detail if isinstance(exc, ToolExecutionError) else str(exc)
            context.record.note_failure(f"tool:{call.name or 'unknown'}", detail)
            return ToolOutput(
                call_id=call_id,
                output=json.dumps({"success": False, "error": detail}, ensure_ascii=False),
            )
        return ToolOutput(call_id=call_id, output=json.dumps(result, ensure_ascii=False))


def _parse_arguments(call: ToolCall) -> dict[str, Any]:
    text = call.arguments.strip() or "{}"
    try:
        arguments = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ToolExecutionError(call.name, f"Invalid tool arguments: {exc}") from exc
    if not isinstance(arguments, dict):
        raise ToolExecutionError(call.name, "Tool arguments must be a JSON object")
    return arguments
