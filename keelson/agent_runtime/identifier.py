"""Time-ordered identifiers.

Ids look like ``prt_0192a3b4c5d6Xk2...``: a type prefix, 12 hex digits of
``timestamp_ms * 0x1000 + counter`` and a random base62 tail.  Ascending ids
sort lexically in creation order within a process (the counter breaks ties
inside one millisecond); descending ids invert the time component so the
newest sorts first.
"""

from __future__ import annotations

import secrets
import string
import threading
import time
from typing import Literal

Prefix = Literal["ses", "msg", "prt", "usr", "per"]

_ID_LENGTH = 26
_BASE62 = string.digits + string.ascii_uppercase + string.ascii_lowercase
_MASK_48 = (1 << 48) - 1

_lock = threading.Lock()
_last_timestamp = 0
_counter = 0


def _random_base62(length: int) -> str:
    return "".join(secrets.choice(_BASE62) for _ in range(length))


def create(prefix: Prefix, *, descending: bool = False, timestamp: int | None = None) -> str:
    global _last_timestamp, _counter

    current = timestamp if timestamp is not None else time.time_ns() // 1_000_000
    with _lock:
        if current != _last_timestamp:
            _last_timestamp = current
            _counter = 0
        _counter += 1
        now = current * 0x1000 + _counter

    if descending:
        now = ~now
    time_hex = f"{now & _MASK_48:012x}"
    return f"{prefix}_{time_hex}{_random_base62(_ID_LENGTH - 12)}"


def ascending(prefix: Prefix, given: str | None = None) -> str:
    if given is None:
        return create(prefix)
    if not given.startswith(prefix):
        msg = f"ID {given} does not start with {prefix}"
        raise ValueError(msg)
    return given


def descending(prefix: Prefix, given: str | None = None) -> str:
    if given is None:
        return create(prefix, descending=True)
    if not given.startswith(prefix):
        msg = f"ID {given} does not start with {prefix}"
        raise ValueError(msg)
    return given
