"""Provider stream event models.

One generation request produces an async sequence of these events.  Sources
may yield the models directly or plain dicts shaped like the AI-SDK full
stream (camelCase keys are accepted); ``parse_stream_event`` normalizes
both.  Event types this runtime does not know become ``UnknownEvent`` so a
newer provider can never break the drain loop.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from keelson.agent_runtime.models.enums import StreamEventType


class _Event(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        arbitrary_types_allowed=True,
    )


# -- Lifecycle ---------------------------------------------------------------


class StartEvent(_Event):
    type: Literal["start"] = "start"


class FinishEvent(_Event):
    type: Literal["finish"] = "finish"
    finish_reason: Any = None
    total_usage: Any = None


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    error: Any = None


class StartStepEvent(_Event):
    type: Literal["start-step"] = "start-step"


class FinishStepEvent(_Event):
    type: Literal["finish-step"] = "finish-step"
    usage: Any = None
    finish_reason: Any = None
    provider_metadata: dict[str, Any] | None = None


# -- Text / reasoning --------------------------------------------------------


class TextStartEvent(_Event):
    type: Literal["text-start"] = "text-start"
    id: str
    provider_metadata: dict[str, Any] | None = None


class TextDeltaEvent(_Event):
    type: Literal["text-delta"] = "text-delta"
    id: str
    text: Any = ""
    provider_metadata: dict[str, Any] | None = None


class TextEndEvent(_Event):
    type: Literal["text-end"] = "text-end"
    id: str
    provider_metadata: dict[str, Any] | None = None


class ReasoningStartEvent(_Event):
    type: Literal["reasoning-start"] = "reasoning-start"
    id: str
    provider_metadata: dict[str, Any] | None = None


class ReasoningDeltaEvent(_Event):
    type: Literal["reasoning-delta"] = "reasoning-delta"
    id: str
    text: Any = ""
    provider_metadata: dict[str, Any] | None = None


class ReasoningEndEvent(_Event):
    type: Literal["reasoning-end"] = "reasoning-end"
    id: str
    provider_metadata: dict[str, Any] | None = None


# -- Tools -------------------------------------------------------------------


class ToolInputStartEvent(_Event):
    type: Literal["tool-input-start"] = "tool-input-start"
    id: str
    tool_name: str


class ToolInputDeltaEvent(_Event):
    type: Literal["tool-input-delta"] = "tool-input-delta"
    id: str
    delta: str = ""


class ToolInputEndEvent(_Event):
    type: Literal["tool-input-end"] = "tool-input-end"
    id: str


class ToolCallEvent(_Event):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    input: Any = None
    provider_metadata: dict[str, Any] | None = None


class ToolResultEvent(_Event):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str = ""
    input: Any = None
    output: Any = None


class ToolErrorEvent(_Event):
    type: Literal["tool-error"] = "tool-error"
    tool_call_id: str
    tool_name: str = ""
    input: Any = None
    error: Any = None


# -- Fallback ----------------------------------------------------------------


class UnknownEvent(_Event):
    """Any event type this runtime does not handle; kept for logging."""

    model_config = ConfigDict(extra="allow")

    type: str


StreamEvent = Annotated[
    StartEvent
    | FinishEvent
    | ErrorEvent
    | StartStepEvent
    | FinishStepEvent
    | TextStartEvent
    | TextDeltaEvent
    | TextEndEvent
    | ReasoningStartEvent
    | ReasoningDeltaEvent
    | ReasoningEndEvent
    | ToolInputStartEvent
    | ToolInputDeltaEvent
    | ToolInputEndEvent
    | ToolCallEvent
    | ToolResultEvent
    | ToolErrorEvent,
    Field(discriminator="type"),
]

_stream_event_adapter: TypeAdapter[Any] = TypeAdapter(StreamEvent)
_KNOWN_TYPES = frozenset(StreamEventType)


def parse_stream_event(raw: Any) -> BaseModel:
    """Normalize a raw stream item into an event model.

    Models pass through untouched.  Dicts with a known ``type`` are
    validated; anything else becomes an ``UnknownEvent``.
    """
    if isinstance(raw, BaseModel):
        return raw
    if isinstance(raw, dict):
        event_type = raw.get("type")
        if isinstance(event_type, str) and event_type in _KNOWN_TYPES:
            return _stream_event_adapter.validate_python(raw)
        return UnknownEvent.model_validate({**raw, "type": str(event_type)})
    return UnknownEvent(type=type(raw).__name__)
