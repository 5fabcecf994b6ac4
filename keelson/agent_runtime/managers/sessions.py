"""Session manager -- persists sessions, messages and parts.

Writes through the ``Storage`` collaborator and announces every change on
the ``EventBus``::

    ["session", project_id, session_id]   -> SessionInfo
    ["message", session_id, message_id]   -> UserMessage | AssistantMessage
    ["part", message_id, part_id]         -> Part

Every message or part mutation touches the owning session's
``time.updated``.  Removing a session cascades to child sessions, their
messages and parts.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from importlib import metadata
from typing import TYPE_CHECKING, Any

from loguru import logger

from keelson.agent_runtime import identifier
from keelson.agent_runtime.models.enums import Topic
from keelson.agent_runtime.models.message import AssistantMessage, MessageAdapter, MessageTime, UserMessage
from keelson.agent_runtime.models.parts import Part, PartAdapter
from keelson.agent_runtime.models.session import SessionInfo, SessionTime, default_title
from keelson.agent_runtime.settings import get_settings
from keelson.agent_runtime.store.base import NotFoundError

if TYPE_CHECKING:
    from keelson.agent_runtime.bus import EventBus
    from keelson.agent_runtime.store.base import Storage

Message = UserMessage | AssistantMessage


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _package_version() -> str:
    try:
        return metadata.version("keelson")
    except metadata.PackageNotFoundError:
        return "0.0.0"


class SessionManager:
    """Session, message and part persistence for one project.

    Stateless beyond its references to storage and the bus.  *project_id*
    defaults to ``KEELSON_PROJECT_ID``.
    """

    def __init__(
        self,
        storage: Storage,
        bus: EventBus,
        *,
        project_id: str | None = None,
        directory: str = ".",
    ) -> None:
        self._storage = storage
        self._bus = bus
        self.project_id = project_id or get_settings().project_id
        self.directory = directory

    def _session_key(self, session_id: str) -> list[str]:
        return ["session", self.project_id, session_id]

    # -- Sessions --------------------------------------------------------------

    async def create(
        self,
        *,
        parent_id: str | None = None,
        title: str | None = None,
        directory: str | None = None,
    ) -> SessionInfo:
        now = _now_ms()
        info = SessionInfo(
            id=identifier.descending("ses"),
            project_id=self.project_id,
            directory=directory or self.directory,
            parent_id=parent_id,
            title=title or default_title(is_child=parent_id is not None),
            version=_package_version(),
            time=SessionTime(created=now, updated=now),
        )
        await self._storage.write(self._session_key(info.id), info.model_dump(mode="json"))
        logger.info("Session created: {} (parent={})", info.id, parent_id)
        await self._bus.publish(Topic.SESSION_CREATED, {"info": info})
        return info

    async def get(self, session_id: str) -> SessionInfo:
        """Raises ``NotFoundError`` if the session does not exist."""
        data = await self._storage.read(self._session_key(session_id))
        return SessionInfo.model_validate(data)

    async def update(self, session_id: str, editor: Callable[[SessionInfo], None], *, touch: bool = True) -> SessionInfo:
        """Apply *editor* to the stored session under the storage key lock."""

        def _mutate(data: dict[str, Any]) -> dict[str, Any]:
            info = SessionInfo.model_validate(data)
            editor(info)
            if touch:
                info.time.updated = _now_ms()
            return info.model_dump(mode="json")

        data = await self._storage.update(self._session_key(session_id), _mutate)
        info = SessionInfo.model_validate(data)
        await self._bus.publish(Topic.SESSION_UPDATED, {"info": info})
        return info

    async def touch(self, session_id: str) -> None:
        """Bump ``time.updated``.  A session removed mid-stream is skipped."""
        try:
            await self.update(session_id, lambda _info: None)
        except NotFoundError:
            logger.debug("Touch skipped, session {} no longer exists", session_id)

    async def list(self) -> list[SessionInfo]:
        sessions = []
        for key in await self._storage.list(["session", self.project_id]):
            try:
                sessions.append(SessionInfo.model_validate(await self._storage.read(key)))
            except NotFoundError:
                continue
        return sessions

    async def children(self, parent_id: str) -> list[SessionInfo]:
        return [info for info in await self.list() if info.parent_id == parent_id]

    async def remove(self, session_id: str) -> None:
        """Delete a session with its child sessions, messages and parts."""
        info = await self.get(session_id)
        for child in await self.children(session_id):
            await self.remove(child.id)
        for key in await self._storage.list(["message", session_id]):
            message_id = key[-1]
            for part_key in await self._storage.list(["part", message_id]):
                await self._storage.remove(part_key)
            await self._storage.remove(key)
        await self._storage.remove(self._session_key(session_id))
        logger.info("Session removed: {}", session_id)
        await self._bus.publish(Topic.SESSION_DELETED, {"info": info})

    # -- Messages --------------------------------------------------------------

    async def update_message(self, message: Message) -> Message:
        await self._storage.write(["message", message.session_id, message.id], message.model_dump(mode="json"))
        await self._bus.publish(Topic.MESSAGE_UPDATED, {"info": message.model_copy(deep=True)})
        await self.touch(message.session_id)
        return message

    async def get_message(self, session_id: str, message_id: str) -> Message:
        data = await self._storage.read(["message", session_id, message_id])
        return MessageAdapter.validate_python(data)

    async def messages(self, session_id: str) -> list[Message]:
        """All messages of a session in creation order."""
        result = []
        for key in await self._storage.list(["message", session_id]):
            result.append(MessageAdapter.validate_python(await self._storage.read(key)))
        return sorted(result, key=lambda m: m.id)

    async def remove_message(self, session_id: str, message_id: str) -> None:
        for key in await self._storage.list(["part", message_id]):
            await self._storage.remove(key)
        await self._storage.remove(["message", session_id, message_id])
        await self._bus.publish(Topic.MESSAGE_REMOVED, {"session_id": session_id, "message_id": message_id})
        await self.touch(session_id)

    # -- Parts -----------------------------------------------------------------

    async def update_part(self, part: Part, *, delta: str | None = None) -> Part:
        """Persist *part*; *delta* is the text appended since the last update, if any."""
        await self._storage.write(["part", part.message_id, part.id], part.model_dump(mode="json"))
        payload: dict[str, Any] = {"part": part.model_copy(deep=True)}
        if delta is not None:
            payload["delta"] = delta
        await self._bus.publish(Topic.PART_UPDATED, payload)
        await self.touch(part.session_id)
        return part

    async def parts(self, message_id: str) -> list[Part]:
        """All parts of a message, sorted by id (emission order)."""
        result = []
        for key in await self._storage.list(["part", message_id]):
            result.append(PartAdapter.validate_python(await self._storage.read(key)))
        return sorted(result, key=lambda p: p.id)


def new_assistant_message(
    session_id: str,
    *,
    parent_id: str | None = None,
    provider_id: str = "",
    model_id: str = "",
) -> AssistantMessage:
    """Shell of an assistant message, ready to hand to a processor."""
    return AssistantMessage(
        id=identifier.ascending("msg"),
        session_id=session_id,
        parent_id=parent_id,
        provider_id=provider_id,
        model_id=model_id,
        time=MessageTime(created=_now_ms()),
    )
