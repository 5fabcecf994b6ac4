"""In-process async pub/sub bus.

Best-effort fan-out: handlers (sync or async) for a topic and wildcard
handlers all run concurrently on ``publish``; a failing handler is logged
and never reaches the publisher.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from keelson.agent_runtime.models.enums import Topic

WILDCARD = "*"


@dataclass(frozen=True)
class BusEvent:
    topic: str
    payload: Any


Handler = Callable[[BusEvent], Any]


class EventBus:
    """Topic -> handlers registry with a bounded publish history."""

    def __init__(self, max_history: int = 500) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._history: list[BusEvent] = []
        self._max_history = max_history

    def subscribe(self, topic: Topic | str, handler: Handler) -> Callable[[], None]:
        """Register *handler* for *topic* (``"*"`` for all).  Returns an unsubscribe callable."""
        key = str(topic)
        self._handlers.setdefault(key, []).append(handler)
        return lambda: self.unsubscribe(key, handler)

    def unsubscribe(self, topic: Topic | str, handler: Handler) -> None:
        handlers = self._handlers.get(str(topic), [])
        try:
            handlers.remove(handler)
        except ValueError:
            pass

    async def publish(self, topic: Topic | str, payload: Any) -> None:
        event = BusEvent(topic=str(topic), payload=payload)
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history :]

        handlers = list(self._handlers.get(event.topic, []))
        handlers.extend(self._handlers.get(WILDCARD, []))
        if not handlers:
            return
        await asyncio.gather(*(self._call_handler(handler, event) for handler in handlers))

    @property
    def history(self) -> list[BusEvent]:
        return list(self._history)

    def events(self, topic: Topic | str) -> list[BusEvent]:
        """Published events for one topic, oldest first."""
        key = str(topic)
        return [event for event in self._history if event.topic == key]

    def clear(self) -> None:
        self._handlers.clear()
        self._history.clear()

    @staticmethod
    async def _call_handler(handler: Handler, event: BusEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Bus handler {} failed for {}", getattr(handler, "__name__", handler), event.topic)
