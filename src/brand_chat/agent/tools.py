"""Built-in tool implementations exposed to the assistant run."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from brand_chat.agent.registry import RECEIVED_OUTPUT, ToolContext, ToolRegistry, ToolSpec
from brand_chat.collaborators import MessageLog, MessageLogEntry
from brand_chat.handoff.delivery import HandoffPipeline
from brand_chat.handoff.extractor import ExtractionContext, HandoffExtractor


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)


class ContactInput(_Lenient):
    name: str | None = Field(default=None, description="Full name of the customer")
    phone: str | None = Field(default=None, description="Phone number")
    email: str | None = None


class MeetingInput(_Lenient):
    mode: str | None = Field(default=None, description="Telefon / Ofis / WhatsApp")
    date: str | None = Field(default=None, description="YYYY-MM-DD")
    time: str | None = Field(default=None, description="HH:MM")


class MatterInput(_Lenient):
    category: str | None = Field(default=None, description="satılık | kiralık | arsa | ticari | diger")
    urgency: str | None = Field(default=None, description="normal | acil")


class RequestInput(_Lenient):
    summary: str | None = Field(default=None, description="One-line summary of the request")
    details: str | None = None


class PropertyInput(_Lenient):
    transaction_type: str | None = None
    property_type: str | None = None
    location: str | None = None
    budget: str | None = None


class HandoffToolInput(_Lenient):
    """Structured customer request collected during the conversation."""

    contact: ContactInput = Field(default_factory=ContactInput)
    preferred_meeting: MeetingInput = Field(default_factory=MeetingInput)
    matter: MatterInput = Field(default_factory=MatterInput)
    request: RequestInput = Field(default_factory=RequestInput)
    property: PropertyInput = Field(default_factory=PropertyInput)


def register_builtin_tools(
    registry: ToolRegistry,
    *,
    extractor: HandoffExtractor,
    pipeline: HandoffPipeline,
    message_log: MessageLog,
) -> None:
    """Register the default tool set declared to brand runs.

    Tools:
    - `submit_handoff`: forwards a collected lead through the handoff gate
      and sinks. Any other tool named like a handoff/lead resolves here too.
    """

    async def _submit_handoff(input_data: BaseModel, context: ToolContext) -> dict[str, object]:
        candidate = extractor.extract(
            ExtractionContext(
                user_text=context.turn.message,
                tool_arguments=input_data.model_dump(exclude_none=True),
            )
        )
        context.handoff_attempted = True
        if candidate is None:
            return RECEIVED_OUTPUT

        handoff = await pipeline.process(
            candidate, turn=context.turn, brand=context.brand, record=context.record
        )
        if handoff is None:
            return RECEIVED_OUTPUT

        context.handoff = handoff
        turn = context.turn
        try:
            await message_log.log_message(
                MessageLogEntry(
                    brand_key=turn.brand_key,
                    thread_id=turn.thread_id,
                    role="system",
                    text="[System] Tool executed: submit_handoff",
                    handoff={"kind": handoff.kind, "payload": handoff.payload},
                    visitor_id=turn.visitor_id,
                    session_id=turn.session_id,
                    source=turn.source,
                    meta=turn.meta,
                )
            )
        except Exception as exc:
            context.record.note_failure("message_log", str(exc))
        return RECEIVED_OUTPUT

    registry.register(
        ToolSpec(
            name="submit_handoff",
            description=(
                "Forward the customer's request to the brand team once name, phone "
                "and a request summary have been collected."
            ),
            args_schema=HandoffToolInput,
            handler=_submit_handoff,
            tags=["handoff", "lead"],
        )
    )
