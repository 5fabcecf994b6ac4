"""In-memory storage, for tests and ephemeral sessions."""

from __future__ import annotations

import asyncio
import copy
from typing import Any

from keelson.agent_runtime.store.base import Key, Mutator, NotFoundError


class MemoryStorage:
    """Dict-backed implementation of the Storage protocol.

    Records are deep-copied on the way in and out, so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self._records: dict[tuple[str, ...], dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def read(self, key: Key) -> dict[str, Any]:
        try:
            return copy.deepcopy(self._records[tuple(key)])
        except KeyError as exc:
            raise NotFoundError(key) from exc

    async def write(self, key: Key, data: dict[str, Any]) -> None:
        self._records[tuple(key)] = copy.deepcopy(data)

    async def update(self, key: Key, mutator: Mutator) -> dict[str, Any]:
        async with self._lock:
            data = await self.read(key)
            result = mutator(data)
            if result is not None:
                data = result
            await self.write(key, data)
        return copy.deepcopy(data)

    async def list(self, prefix: Key) -> list[list[str]]:
        size = len(prefix)
        head = tuple(prefix)
        return sorted(list(key) for key in self._records if len(key) > size and key[:size] == head)

    async def remove(self, key: Key) -> None:
        self._records.pop(tuple(key), None)
