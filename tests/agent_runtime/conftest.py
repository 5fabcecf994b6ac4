"""Shared fixtures for agent-runtime tests.

Everything runs in-process: memory storage, a real bus and status
registry, and a retry policy with its own state table.  Provider streams
are plain async generators, built in the test modules.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from keelson.agent_runtime.bus import EventBus
from keelson.agent_runtime.execution.processor import SessionProcessor
from keelson.agent_runtime.managers.sessions import SessionManager, new_assistant_message
from keelson.agent_runtime.models.provider import ModelCost, ModelInfo
from keelson.agent_runtime.models.session import SessionInfo
from keelson.agent_runtime.registry import SessionStatusRegistry
from keelson.agent_runtime.retry import RetryPolicy, RetryStateTable
from keelson.agent_runtime.settings import KeelsonSettings
from keelson.agent_runtime.signals import CancelSignal
from keelson.agent_runtime.store.memory import MemoryStorage


@pytest.fixture
def settings(tmp_path) -> KeelsonSettings:
    return KeelsonSettings(data_root=str(tmp_path), retry_timeout=60)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def sessions(storage: MemoryStorage, bus: EventBus) -> SessionManager:
    return SessionManager(storage, bus, project_id="proj-1", directory="/work")


@pytest.fixture
def status(bus: EventBus) -> SessionStatusRegistry:
    return SessionStatusRegistry(bus)


@pytest.fixture
def retry_policy(settings: KeelsonSettings) -> RetryPolicy:
    return RetryPolicy(settings, states=RetryStateTable())


@pytest.fixture
def model() -> ModelInfo:
    return ModelInfo(
        id="claude-test",
        provider_id="anthropic",
        cost=ModelCost(input=3, output=15, cache_read=0.3, cache_write=3.75),
    )


@pytest.fixture
def signal() -> CancelSignal:
    return CancelSignal()


@pytest.fixture
async def session(sessions: SessionManager) -> SessionInfo:
    return await sessions.create()


@pytest.fixture
def make_processor(
    session: SessionInfo,
    model: ModelInfo,
    signal: CancelSignal,
    sessions: SessionManager,
    status: SessionStatusRegistry,
    bus: EventBus,
    retry_policy: RetryPolicy,
    settings: KeelsonSettings,
) -> Callable[..., SessionProcessor]:
    def _make(**overrides: Any) -> SessionProcessor:
        kwargs: dict[str, Any] = {
            "message": new_assistant_message(session.id, provider_id=model.provider_id, model_id=model.id),
            "model": model,
            "signal": signal,
            "sessions": sessions,
            "status": status,
            "bus": bus,
            "retry": retry_policy,
            "settings": settings,
        }
        kwargs.update(overrides)
        return SessionProcessor(**kwargs)

    return _make
