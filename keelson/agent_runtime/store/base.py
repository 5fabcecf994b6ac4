"""Storage interface for sessions, messages and parts.

Records are JSON-serializable dicts addressed by key paths, e.g.::

    ["session", project_id, session_id]
    ["message", session_id, message_id]
    ["part", message_id, part_id]

Implementations must serialize ``update`` per key (single writer per key);
the session manager relies on that for read-modify-write of records.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any, Protocol, runtime_checkable

Key = Sequence[str]
Mutator = Callable[[dict[str, Any]], dict[str, Any] | None]


class NotFoundError(LookupError):
    """Raised when no record exists at a key."""

    def __init__(self, key: Key) -> None:
        super().__init__(f"Resource not found: {'/'.join(key)}")
        self.key = list(key)


@runtime_checkable
class Storage(Protocol):
    """Async key-path JSON storage."""

    async def read(self, key: Key) -> dict[str, Any]:
        """Read a record.  Raises ``NotFoundError`` if missing."""
        ...

    async def write(self, key: Key, data: dict[str, Any]) -> None:
        """Create or replace a record."""
        ...

    async def update(self, key: Key, mutator: Mutator) -> dict[str, Any]:
        """Read-modify-write a record under the key's lock.

        *mutator* may edit the dict in place (returning ``None``) or return a
        replacement.  Returns the stored result.  Raises ``NotFoundError``
        if missing.
        """
        ...

    async def list(self, prefix: Key) -> list[list[str]]:
        """All keys under *prefix*, sorted."""
        ...

    async def remove(self, key: Key) -> None:
        """Delete a record.  No-op if not found."""
        ...
