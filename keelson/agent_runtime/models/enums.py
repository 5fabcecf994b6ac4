"""Shared enumerations used across the agent runtime."""

from __future__ import annotations

from enum import StrEnum

# -- Parts -------------------------------------------------------------------


class PartType(StrEnum):
    TEXT = "text"
    REASONING = "reasoning"
    TOOL = "tool"
    STEP_START = "step-start"
    STEP_FINISH = "step-finish"
    PATCH = "patch"


class ToolStatus(StrEnum):
    """Tool part state machine: pending -> running -> completed | error."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


# -- Session status ----------------------------------------------------------


class SessionStatusType(StrEnum):
    IDLE = "idle"
    BUSY = "busy"
    RETRY = "retry"


# -- Stream events -----------------------------------------------------------


class StreamEventType(StrEnum):
    """Event types emitted by a provider stream for one generation request."""

    START = "start"
    FINISH = "finish"
    ERROR = "error"

    START_STEP = "start-step"
    FINISH_STEP = "finish-step"

    TEXT_START = "text-start"
    TEXT_DELTA = "text-delta"
    TEXT_END = "text-end"

    REASONING_START = "reasoning-start"
    REASONING_DELTA = "reasoning-delta"
    REASONING_END = "reasoning-end"

    TOOL_INPUT_START = "tool-input-start"
    TOOL_INPUT_DELTA = "tool-input-delta"
    TOOL_INPUT_END = "tool-input-end"
    TOOL_CALL = "tool-call"
    TOOL_RESULT = "tool-result"
    TOOL_ERROR = "tool-error"


# -- Bus topics --------------------------------------------------------------


class Topic(StrEnum):
    """In-process bus topics."""

    SESSION_CREATED = "session.created"
    SESSION_UPDATED = "session.updated"
    SESSION_DELETED = "session.deleted"
    SESSION_ERROR = "session.error"
    SESSION_STATUS = "session.status"
    SESSION_IDLE = "session.idle"

    MESSAGE_UPDATED = "message.updated"
    MESSAGE_REMOVED = "message.removed"
    PART_UPDATED = "message.part.updated"


# -- Outcome -----------------------------------------------------------------


class ProcessResult(StrEnum):
    """What the caller's step loop should do after one ``process`` call."""

    STOP = "stop"
    CONTINUE = "continue"
