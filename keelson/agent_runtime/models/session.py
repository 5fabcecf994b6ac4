"""Session data models."""

from __future__ import annotations

import re
from datetime import UTC, datetime

from pydantic import BaseModel, Field

from keelson.agent_runtime.models.enums import SessionStatusType

PARENT_TITLE_PREFIX = "New session - "
CHILD_TITLE_PREFIX = "Child session - "

_DEFAULT_TITLE_RE = re.compile(
    rf"^({re.escape(PARENT_TITLE_PREFIX)}|{re.escape(CHILD_TITLE_PREFIX)})"
    r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$"
)


def default_title(*, is_child: bool = False) -> str:
    prefix = CHILD_TITLE_PREFIX if is_child else PARENT_TITLE_PREFIX
    now = datetime.now(UTC)
    return prefix + now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def is_default_title(title: str) -> bool:
    return _DEFAULT_TITLE_RE.match(title) is not None


# -- Session -----------------------------------------------------------------


class SessionTime(BaseModel):
    created: int
    updated: int
    compacting: int | None = None


class SessionSummary(BaseModel):
    additions: int = 0
    deletions: int = 0
    files: int = 0


class SessionInfo(BaseModel):
    """Persisted session record, keyed by ``["session", project_id, id]``."""

    id: str
    project_id: str
    directory: str
    parent_id: str | None = None
    title: str
    version: str
    time: SessionTime
    summary: SessionSummary | None = None


# -- Status ------------------------------------------------------------------


class SessionStatus(BaseModel):
    """Transient session status (busy / retry / idle); never persisted."""

    type: SessionStatusType = SessionStatusType.IDLE
    attempt: int | None = None
    message: str | None = None
    next: int | None = Field(default=None, description="Epoch ms of the next retry attempt")

    @classmethod
    def idle(cls) -> SessionStatus:
        return cls(type=SessionStatusType.IDLE)

    @classmethod
    def busy(cls) -> SessionStatus:
        return cls(type=SessionStatusType.BUSY)

    @classmethod
    def retry(cls, *, attempt: int, message: str, next_at: int) -> SessionStatus:
        return cls(type=SessionStatusType.RETRY, attempt=attempt, message=message, next=next_at)
