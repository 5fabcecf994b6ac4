"""In-process session status registry.

Tracks the transient status (busy / retry / idle) of every session that has
run in this process and announces each change on the bus.  Ephemeral:
empty on process restart, never persisted.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from keelson.agent_runtime.models.enums import SessionStatusType, Topic
from keelson.agent_runtime.models.session import SessionStatus

if TYPE_CHECKING:
    from keelson.agent_runtime.bus import EventBus


class SessionStatusRegistry:
    """Session id -> latest ``SessionStatus``.  Idle sessions are dropped."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self._statuses: dict[str, SessionStatus] = {}

    # -- Mutation --------------------------------------------------------------

    async def set(self, session_id: str, status: SessionStatus) -> None:
        logger.debug("Registry: session {} -> {}", session_id, status.type)
        if status.type == SessionStatusType.IDLE:
            self._statuses.pop(session_id, None)
        else:
            self._statuses[session_id] = status
        await self._bus.publish(Topic.SESSION_STATUS, {"session_id": session_id, "status": status})
        if status.type == SessionStatusType.IDLE:
            await self._bus.publish(Topic.SESSION_IDLE, {"session_id": session_id})

    # -- Query -----------------------------------------------------------------

    def get(self, session_id: str) -> SessionStatus:
        return self._statuses.get(session_id) or SessionStatus.idle()

    def list(self) -> dict[str, SessionStatus]:
        """Snapshot of all non-idle sessions."""
        return dict(self._statuses)

    @property
    def active_count(self) -> int:
        return len(self._statuses)
