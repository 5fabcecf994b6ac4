"""Outer step loop -- one assistant message per tool round.

Each step gets a fresh assistant message parented to the user message and
its own ``SessionProcessor``.  The loop continues while the processor says
``continue`` and the model stopped to call tools.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, Callable
from functools import partial
from typing import TYPE_CHECKING, Any

from keelson.agent_runtime.execution.processor import SessionProcessor
from keelson.agent_runtime.managers.sessions import new_assistant_message
from keelson.agent_runtime.models.enums import ProcessResult, ToolStatus
from keelson.agent_runtime.models.parts import ToolPart
from keelson.agent_runtime.settings import KeelsonSettings, get_settings

if TYPE_CHECKING:
    from keelson.agent_runtime.bus import EventBus
    from keelson.agent_runtime.execution.collaborators import PermissionGuard, SnapshotService, SummaryService
    from keelson.agent_runtime.managers.sessions import SessionManager
    from keelson.agent_runtime.models.message import AssistantMessage
    from keelson.agent_runtime.models.provider import ModelInfo
    from keelson.agent_runtime.registry import SessionStatusRegistry
    from keelson.agent_runtime.retry import RetryPolicy
    from keelson.agent_runtime.signals import CancelSignal

logger = logging.getLogger(__name__)

StepStreamFactory = Callable[["AssistantMessage"], AsyncIterable[Any]]

TOOL_CALLS_FINISH = "tool-calls"
UNKNOWN_FINISH = "unknown"


async def _wants_another_step(sessions: SessionManager, message: AssistantMessage) -> bool:
    if message.finish == TOOL_CALLS_FINISH:
        return True
    if message.finish != UNKNOWN_FINISH:
        return False
    # Some providers report tool rounds as "unknown"; trust the parts instead.
    return any(
        isinstance(part, ToolPart) and part.state.status == ToolStatus.COMPLETED
        for part in await sessions.parts(message.id)
    )


async def run_steps(
    open_stream: StepStreamFactory,
    *,
    session_id: str,
    model: ModelInfo,
    signal: CancelSignal,
    sessions: SessionManager,
    status: SessionStatusRegistry,
    bus: EventBus,
    user_message_id: str | None = None,
    retry: RetryPolicy | None = None,
    snapshot: SnapshotService | None = None,
    permission: PermissionGuard | None = None,
    summary: SummaryService | None = None,
    settings: KeelsonSettings | None = None,
) -> AssistantMessage | None:
    """Run processor steps until the model stops calling tools.

    ``open_stream`` receives the step's assistant message and must return a
    fresh event stream on every call (it is re-called on retries).  Returns
    the last assistant message, or ``None`` if no step ran.
    """
    settings = settings or get_settings()
    last: AssistantMessage | None = None

    for step in range(1, settings.max_steps + 1):
        signal.throw_if_aborted()
        message = new_assistant_message(
            session_id,
            parent_id=user_message_id,
            provider_id=model.provider_id,
            model_id=model.id,
        )
        await sessions.update_message(message)

        processor = SessionProcessor(
            message=message,
            model=model,
            signal=signal,
            sessions=sessions,
            status=status,
            bus=bus,
            retry=retry,
            snapshot=snapshot,
            permission=permission,
            summary=summary,
            settings=settings,
        )
        result = await processor.process(partial(open_stream, message))
        last = processor.message
        logger.debug("Session %s step %d finished: result=%s finish=%s", session_id, step, result, last.finish)

        if result == ProcessResult.STOP or not await _wants_another_step(sessions, last):
            return last

    logger.warning("Session %s reached the step limit (%d)", session_id, settings.max_steps)
    return last
