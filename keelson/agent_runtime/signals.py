"""Cancellation signals with parent/child derivation.

A session's generation request is governed by one ``CancelSignal`` (user
cancellation, shutdown).  Narrower scopes derive children from it:

- the per-request deadline: ``governing.child(timeout=step_timeout)``
- the retry wait: ``governing.child(timeout=remaining_retry_budget)``

Aborting a parent aborts every child; a child firing (for example its own
deadline) never touches the parent or its siblings.  That is what keeps a
multi-hour rate-limit wait alive while the minutes-long request deadline
of the failed attempt has long expired.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from keelson.agent_runtime.errors import MessageAbortedError, ProviderError

Listener = Callable[["CancelSignal"], None]


class CancelSignal:
    """One-shot cancellation flag observable from coroutines and callbacks."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: ProviderError | None = None
        self._listeners: list[Listener] = []
        self._timer: asyncio.TimerHandle | None = None
        self._detach: Callable[[], None] | None = None

    # -- State -----------------------------------------------------------------

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> ProviderError | None:
        return self._reason

    def throw_if_aborted(self) -> None:
        if self._reason is not None:
            raise self._reason

    async def wait(self) -> None:
        await self._event.wait()

    # -- Mutation --------------------------------------------------------------

    def abort(self, reason: ProviderError | None = None) -> None:
        """Fire the signal.  Later calls are no-ops; the first reason wins."""
        if self.aborted:
            return
        self._reason = reason or MessageAbortedError("Aborted")
        self._event.set()
        self.close()
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            listener(self)

    def add_listener(self, listener: Listener) -> None:
        if self.aborted:
            listener(self)
            return
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    # -- Derivation ------------------------------------------------------------

    def child(self, *, timeout: float | None = None, timeout_reason: ProviderError | None = None) -> CancelSignal:
        """Derive a signal that fires with this one, or on its own after *timeout* seconds.

        Must be called from a running event loop when *timeout* is given.
        Call ``close()`` on the child once its scope ends so the parent does
        not keep a reference to it.
        """
        child = CancelSignal()
        if self.aborted:
            child.abort(self._reason)
            return child

        def _propagate(parent: CancelSignal) -> None:
            child.abort(parent.reason)

        self.add_listener(_propagate)
        child._detach = lambda: self.remove_listener(_propagate)

        if timeout is not None:
            reason = timeout_reason or MessageAbortedError(f"Signal timed out after {timeout:.3f}s")
            loop = asyncio.get_running_loop()
            child._timer = loop.call_later(max(timeout, 0), child.abort, reason)
        return child

    def close(self) -> None:
        """Drop the pending deadline timer and the link to the parent."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._detach is not None:
            self._detach()
            self._detach = None
