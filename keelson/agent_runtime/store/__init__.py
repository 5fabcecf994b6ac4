"""Storage implementations for session, message and part records."""

from keelson.agent_runtime.store.base import NotFoundError, Storage
from keelson.agent_runtime.store.local import LocalStorage
from keelson.agent_runtime.store.memory import MemoryStorage

__all__ = ["LocalStorage", "MemoryStorage", "NotFoundError", "Storage"]
