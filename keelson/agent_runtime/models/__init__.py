"""Data models for the agent runtime."""

from keelson.agent_runtime.models.enums import (
    PartType,
    ProcessResult,
    SessionStatusType,
    StreamEventType,
    ToolStatus,
    Topic,
)
from keelson.agent_runtime.models.events import StreamEvent, UnknownEvent, parse_stream_event
from keelson.agent_runtime.models.message import (
    AssistantMessage,
    CacheTokens,
    Message,
    MessageAdapter,
    MessageError,
    MessageTime,
    TokenUsage,
    UserMessage,
)
from keelson.agent_runtime.models.parts import (
    Part,
    PartAdapter,
    PatchPart,
    ReasoningPart,
    StepFinishPart,
    StepStartPart,
    TextPart,
    ToolPart,
    ToolState,
    ToolStateCompleted,
    ToolStateError,
    ToolStatePending,
    ToolStateRunning,
)
from keelson.agent_runtime.models.provider import ModelCost, ModelInfo
from keelson.agent_runtime.models.session import SessionInfo, SessionStatus, SessionSummary, SessionTime

__all__ = [
    # Messages
    "AssistantMessage",
    "CacheTokens",
    "Message",
    "MessageAdapter",
    "MessageError",
    "MessageTime",
    # Provider
    "ModelCost",
    "ModelInfo",
    # Parts
    "Part",
    "PartAdapter",
    # Enums
    "PartType",
    "PatchPart",
    "ProcessResult",
    "ReasoningPart",
    # Session
    "SessionInfo",
    "SessionStatus",
    "SessionStatusType",
    "SessionSummary",
    "SessionTime",
    "StepFinishPart",
    "StepStartPart",
    # Events
    "StreamEvent",
    "StreamEventType",
    "TextPart",
    "TokenUsage",
    "ToolPart",
    "ToolState",
    "ToolStateCompleted",
    "ToolStateError",
    "ToolStatePending",
    "ToolStateRunning",
    "ToolStatus",
    "Topic",
    "UnknownEvent",
    "UserMessage",
    "parse_stream_event",
]
