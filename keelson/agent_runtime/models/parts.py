"""Message part models.

A part is one fragment of assistant output, persisted under
``["part", message_id, part_id]``.  Part ids are ascending, so sorting a
message's parts by id replays them in emission order.

Parts and tool states are discriminated unions; consumers switch on
``type`` / ``status`` with ``match`` so a new variant surfaces as an
unhandled case instead of silently dropped output.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter

from keelson.agent_runtime.models.enums import ToolStatus
from keelson.agent_runtime.models.message import TokenUsage

# -- Tool state --------------------------------------------------------------


class ToolTimeStart(BaseModel):
    start: int


class ToolTimeRange(BaseModel):
    start: int
    end: int


class ToolStatePending(BaseModel):
    status: Literal["pending"] = "pending"
    input: dict[str, Any] = Field(default_factory=dict)
    raw: str = ""


class ToolStateRunning(BaseModel):
    status: Literal["running"] = "running"
    input: Any = None
    title: str | None = None
    metadata: dict[str, Any] | None = None
    time: ToolTimeStart


class ToolStateCompleted(BaseModel):
    status: Literal["completed"] = "completed"
    input: Any = None
    output: str = ""
    title: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    attachments: list[dict[str, Any]] | None = None
    time: ToolTimeRange


class ToolStateError(BaseModel):
    status: Literal["error"] = "error"
    input: Any = None
    error: str
    metadata: dict[str, Any] | None = None
    time: ToolTimeRange


ToolState = Annotated[
    ToolStatePending | ToolStateRunning | ToolStateCompleted | ToolStateError,
    Field(discriminator="status"),
]

TOOL_STATE_ORDER: dict[ToolStatus, int] = {
    ToolStatus.PENDING: 0,
    ToolStatus.RUNNING: 1,
    ToolStatus.COMPLETED: 2,
    ToolStatus.ERROR: 2,
}


# -- Parts -------------------------------------------------------------------


class PartBase(BaseModel):
    id: str
    message_id: str
    session_id: str


class PartTime(BaseModel):
    start: int
    end: int | None = None


class TextPart(PartBase):
    type: Literal["text"] = "text"
    text: str = ""
    time: PartTime
    metadata: dict[str, Any] | None = None


class ReasoningPart(PartBase):
    type: Literal["reasoning"] = "reasoning"
    text: str = ""
    time: PartTime
    metadata: dict[str, Any] | None = None


class ToolPart(PartBase):
    type: Literal["tool"] = "tool"
    call_id: str
    tool: str
    state: ToolState
    metadata: dict[str, Any] | None = None


class StepStartPart(PartBase):
    type: Literal["step-start"] = "step-start"
    snapshot: str | None = None


class StepFinishPart(PartBase):
    type: Literal["step-finish"] = "step-finish"
    reason: str
    snapshot: str | None = None
    cost: float = 0.0
    tokens: TokenUsage = Field(default_factory=TokenUsage)


class PatchPart(PartBase):
    type: Literal["patch"] = "patch"
    hash: str
    files: list[str] = Field(default_factory=list)


Part = Annotated[
    TextPart | ReasoningPart | ToolPart | StepStartPart | StepFinishPart | PatchPart,
    Field(discriminator="type"),
]

PartAdapter: TypeAdapter[TextPart | ReasoningPart | ToolPart | StepStartPart | StepFinishPart | PatchPart] = (
    TypeAdapter(Part)
)
