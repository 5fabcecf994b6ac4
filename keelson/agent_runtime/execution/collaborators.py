"""Collaborators the stream processor calls out to.

Each is a ``Protocol`` with a trivial default implementation, so a
processor can be assembled without a filesystem snapshot backend, a
permission UI or a summarizer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


@dataclass
class Patch:
    """Filesystem diff between a snapshot and the current tree."""

    hash: str
    files: list[str] = field(default_factory=list)


@runtime_checkable
class SnapshotService(Protocol):
    async def track(self) -> str | None:
        """Record the current tree; returns a snapshot ref (``None`` if untracked)."""
        ...

    async def patch(self, ref: str) -> Patch:
        """Files changed since *ref*."""
        ...


class NullSnapshot:
    """Snapshot service for directories that are not tracked."""

    async def track(self) -> str | None:
        return None

    async def patch(self, ref: str) -> Patch:
        return Patch(hash=ref, files=[])


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


@runtime_checkable
class PermissionGuard(Protocol):
    async def doom_loop(
        self,
        *,
        session_id: str,
        message_id: str,
        call_id: str,
        tool: str,
        input: Any,
    ) -> bool:
        """Called when the same tool call repeated three times in a row.

        Return ``True`` to block the session (the processor stops after the
        current step), ``False`` to let it continue.
        """
        ...


class AllowAllGuard:
    """Never blocks; logs the repetition."""

    async def doom_loop(
        self,
        *,
        session_id: str,
        message_id: str,
        call_id: str,
        tool: str,
        input: Any,
    ) -> bool:
        logger.warning("Session %s repeated tool %s with identical input (call %s)", session_id, tool, call_id)
        return False


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


@runtime_checkable
class SummaryService(Protocol):
    async def summarize(self, *, session_id: str, message_id: str) -> None: ...


class NullSummary:
    async def summarize(self, *, session_id: str, message_id: str) -> None:
        return None
