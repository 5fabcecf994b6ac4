"""Session stream processor -- provider events in, persisted parts out.

One ``SessionProcessor`` drives one assistant message:

1. **Drain**: open the provider stream, turn each event into a part
   mutation (persisted through the session manager, announced on the bus)
2. **Recover**: classify failures; retry transient ones after a backoff
   sleep, attach terminal ones to the message
3. **Finalize**: close dangling tool calls, stamp completion, go idle

Three cancellation scopes are in play.  The governing signal belongs to the
caller (user cancel, shutdown).  Each stream attempt runs under a child of
it carrying the per-request deadline.  Retry sleeps run under a *different*
child bounded by the remaining retry budget, so a request deadline of
minutes can never cut short a rate-limit wait of hours.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterable, AsyncIterator, Callable
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from keelson.agent_runtime import identifier
from keelson.agent_runtime.errors import (
    MessageAbortedError,
    ProviderError,
    RequestTimeoutError,
    UsageShapeError,
    classify_error,
)
from keelson.agent_runtime.execution.collaborators import AllowAllGuard, NullSnapshot, NullSummary
from keelson.agent_runtime.models.enums import ProcessResult, Topic, ToolStatus
from keelson.agent_runtime.models.events import (
    ErrorEvent,
    FinishEvent,
    FinishStepEvent,
    ReasoningDeltaEvent,
    ReasoningEndEvent,
    ReasoningStartEvent,
    StartEvent,
    StartStepEvent,
    TextDeltaEvent,
    TextEndEvent,
    TextStartEvent,
    ToolCallEvent,
    ToolErrorEvent,
    ToolInputDeltaEvent,
    ToolInputEndEvent,
    ToolInputStartEvent,
    ToolResultEvent,
    UnknownEvent,
    parse_stream_event,
)
from keelson.agent_runtime.models.parts import (
    PartTime,
    PatchPart,
    ReasoningPart,
    StepFinishPart,
    StepStartPart,
    TextPart,
    ToolPart,
    ToolStateCompleted,
    ToolStateError,
    ToolStatePending,
    ToolStateRunning,
    ToolTimeRange,
    ToolTimeStart,
)
from keelson.agent_runtime.models.session import SessionStatus
from keelson.agent_runtime.retry import RetryPolicy, retry_key
from keelson.agent_runtime.settings import KeelsonSettings, get_settings
from keelson.agent_runtime.usage import get_usage, to_finish_reason

if TYPE_CHECKING:
    from keelson.agent_runtime.bus import EventBus
    from keelson.agent_runtime.execution.collaborators import PermissionGuard, SnapshotService, SummaryService
    from keelson.agent_runtime.managers.sessions import SessionManager
    from keelson.agent_runtime.models.message import AssistantMessage
    from keelson.agent_runtime.models.provider import ModelInfo
    from keelson.agent_runtime.registry import SessionStatusRegistry
    from keelson.agent_runtime.signals import CancelSignal

logger = logging.getLogger(__name__)

StreamFactory = Callable[[], AsyncIterable[Any]]

DOOM_LOOP_THRESHOLD = 3
TOOL_ABORTED_MESSAGE = "Tool execution aborted"
UNKNOWN_FINISH = "unknown"


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def _coerce_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


async def _anext(iterator: AsyncIterator[Any]) -> Any:
    return await iterator.__anext__()


class SessionProcessor:
    """Stream processor for one assistant message.

    The in-flight tool-call index and the open text/reasoning parts live on
    the instance and are discarded when ``process`` returns.
    """

    def __init__(
        self,
        *,
        message: AssistantMessage,
        model: ModelInfo,
        signal: CancelSignal,
        sessions: SessionManager,
        status: SessionStatusRegistry,
        bus: EventBus,
        retry: RetryPolicy | None = None,
        snapshot: SnapshotService | None = None,
        permission: PermissionGuard | None = None,
        summary: SummaryService | None = None,
        settings: KeelsonSettings | None = None,
    ) -> None:
        self.message = message
        self.session_id = message.session_id
        self._model = model
        self._signal = signal
        self._sessions = sessions
        self._status = status
        self._bus = bus
        self._settings = settings or get_settings()
        self._retry = retry or RetryPolicy(self._settings)
        self._snapshot = snapshot or NullSnapshot()
        self._permission = permission or AllowAllGuard()
        self._summary = summary or NullSummary()

        self._toolcalls: dict[str, ToolPart] = {}
        self._reasoning: dict[str, ReasoningPart] = {}
        self._text: dict[str, TextPart] = {}
        self._snapshot_ref: str | None = None
        self._blocked = False
        self._attempt = 0
        self._class_attempts: dict[str, int] = {}
        self._summary_tasks: set[asyncio.Task[None]] = set()

    @property
    def attempt(self) -> int:
        """Retries scheduled so far, across all error classes."""
        return self._attempt

    def part_from_tool_call(self, call_id: str) -> ToolPart | None:
        return self._toolcalls.get(call_id)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def process(self, open_stream: StreamFactory) -> ProcessResult:
        """Drain the stream (re-opening it on retry) and finalize the message.

        Returns ``ProcessResult.STOP`` when the session was blocked or the
        message ended in a terminal error, ``ProcessResult.CONTINUE``
        otherwise.  An abort of the governing signal (or task cancellation)
        finalizes the message as aborted and propagates unchanged.
        """
        self._blocked = False
        try:
            while True:
                error = await self._run_attempt(open_stream)
                if error is None:
                    break
                terminal = await self._schedule_retry(error)
                if terminal is None:
                    continue
                await self._fail(terminal)
                break
        except asyncio.CancelledError:
            await self._abort(MessageAbortedError("Aborted"))
            raise
        except Exception as exc:
            if not (self._signal.aborted or isinstance(exc, MessageAbortedError)):
                raise
            await self._abort(classify_error(exc))
            raise
        return await self._finalize()

    async def _run_attempt(self, open_stream: StreamFactory) -> ProviderError | None:
        """One stream attempt.  Returns the classified failure, ``None`` on success.

        Open text and reasoning parts are scoped to one attempt; a retried
        stream may reuse provider ids.
        """
        self._text.clear()
        self._reasoning.clear()
        step_timeout = self._settings.stream_step_timeout_ms / 1000
        request_signal = self._signal.child(
            timeout=step_timeout,
            timeout_reason=RequestTimeoutError(f"Stream attempt exceeded {step_timeout:g}s"),
        )
        try:
            await self._drain(open_stream, request_signal)
        except Exception as exc:
            if self._signal.aborted:
                raise
            error = classify_error(exc)
            if isinstance(error, MessageAbortedError):
                if error is exc:
                    raise
                raise error from exc
            if self.message.completed:
                logger.warning(
                    "Session %s: ignoring %s after the message completed: %s",
                    self.session_id,
                    error.name,
                    error.message,
                )
                return None
            if isinstance(error, UsageShapeError):
                logger.warning(
                    "Session %s: unreadable usage from provider, step kept without usage: %s",
                    self.session_id,
                    error.message,
                )
                if self.message.finish is None:
                    self.message.finish = UNKNOWN_FINISH
                return None
            logger.info("Session %s: stream attempt failed with %s: %s", self.session_id, error.name, error.message)
            return error
        finally:
            request_signal.close()
        return None

    async def _drain(self, open_stream: StreamFactory, request_signal: CancelSignal) -> None:
        iterator = aiter(open_stream())
        try:
            while True:
                request_signal.throw_if_aborted()
                try:
                    raw = await self._next_event(iterator, request_signal)
                except StopAsyncIteration:
                    return
                await self._handle(parse_stream_event(raw))
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:
                    logger.debug("Closing provider stream failed", exc_info=True)

    async def _next_event(self, iterator: AsyncIterator[Any], request_signal: CancelSignal) -> Any:
        """Await the next event, racing the request signal and the chunk timeout."""
        chunk_timeout = self._settings.stream_chunk_timeout_ms / 1000
        next_task = asyncio.ensure_future(_anext(iterator))
        abort_task = asyncio.ensure_future(request_signal.wait())
        try:
            done, _ = await asyncio.wait(
                {next_task, abort_task},
                timeout=chunk_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            abort_task.cancel()
            if not next_task.done():
                next_task.cancel()
                await asyncio.wait({next_task})

        if request_signal.aborted:
            if next_task.done() and not next_task.cancelled():
                next_task.exception()
            raise request_signal.reason or MessageAbortedError("Aborted")
        if next_task in done:
            return next_task.result()
        msg = f"No stream event received within {chunk_timeout:g}s"
        raise RequestTimeoutError(msg)

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    async def _handle(self, event: BaseModel) -> None:  # noqa: C901
        match event:
            case StartEvent():
                await self._status.set(self.session_id, SessionStatus.busy())

            case ReasoningStartEvent():
                if event.id in self._reasoning:
                    return
                part = ReasoningPart(
                    id=identifier.ascending("prt"),
                    message_id=self.message.id,
                    session_id=self.session_id,
                    time=PartTime(start=_now_ms()),
                    metadata=event.provider_metadata,
                )
                self._reasoning[event.id] = part
                await self._sessions.update_part(part)

            case ReasoningDeltaEvent():
                part = self._reasoning.get(event.id)
                if part is None:
                    return
                delta = _coerce_text(event.text)
                part.text += delta
                if event.provider_metadata:
                    part.metadata = event.provider_metadata
                if part.text:
                    await self._sessions.update_part(part, delta=delta)

            case ReasoningEndEvent():
                part = self._reasoning.pop(event.id, None)
                if part is None:
                    return
                part.text = part.text.rstrip()
                part.time.end = _now_ms()
                if event.provider_metadata:
                    part.metadata = event.provider_metadata
                await self._sessions.update_part(part)

            case TextStartEvent():
                if event.id in self._text:
                    return
                self._text[event.id] = TextPart(
                    id=identifier.ascending("prt"),
                    message_id=self.message.id,
                    session_id=self.session_id,
                    time=PartTime(start=_now_ms()),
                    metadata=event.provider_metadata,
                )

            case TextDeltaEvent():
                part = self._text.get(event.id)
                if part is None:
                    return
                delta = _coerce_text(event.text)
                part.text += delta
                if event.provider_metadata:
                    part.metadata = event.provider_metadata
                if part.text:
                    await self._sessions.update_part(part, delta=delta)

            case TextEndEvent():
                part = self._text.pop(event.id, None)
                if part is None:
                    return
                part.text = part.text.rstrip()
                part.time.end = _now_ms()
                if event.provider_metadata:
                    part.metadata = event.provider_metadata
                await self._sessions.update_part(part)

            case ToolInputStartEvent():
                await self._tool_input_start(event.id, event.tool_name)

            case ToolInputDeltaEvent() | ToolInputEndEvent():
                pass

            case ToolCallEvent():
                await self._tool_call(event)

            case ToolResultEvent():
                await self._tool_result(event)

            case ToolErrorEvent():
                await self._tool_error(event)

            case ErrorEvent():
                if isinstance(event.error, BaseException):
                    raise event.error
                raise classify_error(event.error)

            case StartStepEvent():
                self._snapshot_ref = await self._snapshot.track()
                await self._sessions.update_part(
                    StepStartPart(
                        id=identifier.ascending("prt"),
                        message_id=self.message.id,
                        session_id=self.session_id,
                        snapshot=self._snapshot_ref,
                    )
                )

            case FinishStepEvent():
                await self._finish_step(event)

            case FinishEvent():
                self.message.time.completed = _now_ms()
                await self._sessions.update_message(self.message)
                self._retry.clear_retry_state(self.session_id)

            case UnknownEvent():
                logger.debug("Session %s: skipping unhandled stream event %r", self.session_id, event.type)

            case _:
                logger.debug("Session %s: skipping unhandled stream event %r", self.session_id, type(event).__name__)

    # -- Tools -------------------------------------------------------------

    async def _tool_input_start(self, call_id: str, tool_name: str) -> ToolPart | None:
        existing = self._toolcalls.get(call_id)
        if existing is not None and existing.state.status != ToolStatus.PENDING:
            return None
        part = ToolPart(
            id=existing.id if existing is not None else identifier.ascending("prt"),
            message_id=self.message.id,
            session_id=self.session_id,
            call_id=call_id,
            tool=tool_name,
            state=ToolStatePending(),
        )
        self._toolcalls[call_id] = part
        await self._sessions.update_part(part)
        return part

    async def _tool_call(self, event: ToolCallEvent) -> None:
        part = self._toolcalls.get(event.tool_call_id)
        if part is None:
            part = await self._tool_input_start(event.tool_call_id, event.tool_name)
        if part is None or part.state.status != ToolStatus.PENDING:
            return

        part.tool = event.tool_name
        part.state = ToolStateRunning(input=event.input, time=ToolTimeStart(start=_now_ms()))
        if event.provider_metadata:
            part.metadata = event.provider_metadata
        await self._sessions.update_part(part)

        if await self._is_doom_loop(event.tool_name, event.input):
            blocked = await self._permission.doom_loop(
                session_id=self.session_id,
                message_id=self.message.id,
                call_id=event.tool_call_id,
                tool=event.tool_name,
                input=event.input,
            )
            if blocked:
                logger.warning("Session %s blocked by doom-loop guard on tool %s", self.session_id, event.tool_name)
                self._blocked = True

    async def _is_doom_loop(self, tool: str, tool_input: Any) -> bool:
        last = (await self._sessions.parts(self.message.id))[-DOOM_LOOP_THRESHOLD:]
        if len(last) < DOOM_LOOP_THRESHOLD:
            return False
        expected = _canonical(tool_input)
        return all(
            isinstance(part, ToolPart)
            and part.tool == tool
            and part.state.status != ToolStatus.PENDING
            and _canonical(part.state.input) == expected
            for part in last
        )

    async def _tool_result(self, event: ToolResultEvent) -> None:
        part = self._toolcalls.pop(event.tool_call_id, None)
        if part is None or not isinstance(part.state, ToolStateRunning):
            return
        output = event.output
        if isinstance(output, dict):
            text = _coerce_text(output.get("output"))
            title = _coerce_text(output.get("title"))
            metadata = output.get("metadata") or {}
            attachments = output.get("attachments")
        else:
            text, title, metadata, attachments = _coerce_text(output), "", {}, None
        part.state = ToolStateCompleted(
            input=event.input if event.input is not None else part.state.input,
            output=text,
            title=title,
            metadata=metadata,
            attachments=attachments,
            time=ToolTimeRange(start=part.state.time.start, end=_now_ms()),
        )
        await self._sessions.update_part(part)

    async def _tool_error(self, event: ToolErrorEvent) -> None:
        part = self._toolcalls.pop(event.tool_call_id, None)
        if part is None or not isinstance(part.state, ToolStateRunning):
            return
        part.state = ToolStateError(
            input=event.input if event.input is not None else part.state.input,
            error=_coerce_text(event.error),
            metadata=part.state.metadata,
            time=ToolTimeRange(start=part.state.time.start, end=_now_ms()),
        )
        await self._sessions.update_part(part)

    # -- Steps -------------------------------------------------------------

    async def _finish_step(self, event: FinishStepEvent) -> None:
        usage = get_usage(self._model, event.usage, event.provider_metadata)
        finish = to_finish_reason(event.finish_reason)
        self.message.finish = finish
        self.message.cost = float(Decimal(str(self.message.cost)) + Decimal(str(usage.cost)))
        self.message.tokens = self.message.tokens + usage.tokens

        await self._sessions.update_part(
            StepFinishPart(
                id=identifier.ascending("prt"),
                message_id=self.message.id,
                session_id=self.session_id,
                reason=finish,
                snapshot=await self._snapshot.track(),
                cost=usage.cost,
                tokens=usage.tokens,
            )
        )
        await self._sessions.update_message(self.message)

        if self._snapshot_ref is not None:
            patch = await self._snapshot.patch(self._snapshot_ref)
            if patch.files:
                await self._sessions.update_part(
                    PatchPart(
                        id=identifier.ascending("prt"),
                        message_id=self.message.id,
                        session_id=self.session_id,
                        hash=patch.hash,
                        files=patch.files,
                    )
                )
            self._snapshot_ref = None

        self._refresh_summary()

    def _refresh_summary(self) -> None:
        task = asyncio.create_task(self._summary.summarize(session_id=self.session_id, message_id=self.message.id))
        self._summary_tasks.add(task)
        task.add_done_callback(self._on_summary_done)

    def _on_summary_done(self, task: asyncio.Task[None]) -> None:
        self._summary_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Summary refresh failed for session %s", self.session_id, exc_info=exc)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def _schedule_retry(self, error: ProviderError) -> ProviderError | None:
        """Sleep before the next attempt.  Returns the terminal error when no retry is granted."""
        if not error.is_retryable:
            return error

        key = retry_key(error)
        check = self._retry.should_retry(self.session_id, key)
        if not check.should_retry:
            logger.info(
                "Session %s: retry budget for %s exhausted after %dms",
                self.session_id,
                key,
                check.elapsed_time,
            )
            return error

        class_attempt = self._class_attempts.get(key, 0) + 1
        cap = self._retry.max_attempts(error)
        if cap is not None and class_attempt > cap:
            logger.info("Session %s: %s gave up after %d retries", self.session_id, key, cap)
            return error

        try:
            delay = self._retry.delay_for(error, class_attempt)
        except ProviderError as exc:
            return exc

        self._class_attempts[key] = class_attempt
        self._attempt += 1
        logger.info(
            "Session %s: retrying %s (attempt %d) in %dms",
            self.session_id,
            error.name,
            self._attempt,
            delay,
        )
        await self._status.set(
            self.session_id,
            SessionStatus.retry(attempt=self._attempt, message=error.message, next_at=_now_ms() + delay),
        )
        self._retry.update_retry_state(self.session_id, delay)

        budget = self._retry.remaining_time(self.session_id) / 1000
        sleep_signal = self._signal.child(
            timeout=budget,
            timeout_reason=MessageAbortedError("Retry budget elapsed during backoff"),
        )
        try:
            completed = await self._retry.sleep(delay, sleep_signal)
        finally:
            sleep_signal.close()

        if completed:
            return None
        self._signal.throw_if_aborted()
        logger.info("Session %s: retry budget elapsed while waiting for %s", self.session_id, key)
        return error

    async def _fail(self, error: ProviderError) -> None:
        logger.error("Session %s failed with %s: %s", self.session_id, error.name, error.message)
        self._retry.clear_retry_state(self.session_id)
        message_error = error.to_message_error()
        if not self.message.completed:
            self.message.error = message_error
        await self._bus.publish(
            Topic.SESSION_ERROR,
            {"session_id": self.session_id, "message_id": self.message.id, "error": message_error},
        )

    async def _abort(self, error: ProviderError) -> None:
        logger.info("Session %s aborted: %s", self.session_id, error.message)
        if not self.message.completed:
            self.message.error = error.to_message_error()
        await self._finalize()

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def _finalize(self) -> ProcessResult:
        now = _now_ms()
        for part in await self._sessions.parts(self.message.id):
            if not isinstance(part, ToolPart):
                continue
            state = part.state
            if isinstance(state, ToolStatePending | ToolStateRunning):
                start = state.time.start if isinstance(state, ToolStateRunning) else now
                part.state = ToolStateError(
                    input=state.input,
                    error=TOOL_ABORTED_MESSAGE,
                    metadata=state.metadata if isinstance(state, ToolStateRunning) else None,
                    time=ToolTimeRange(start=start, end=now),
                )
                await self._sessions.update_part(part)

        if not self.message.completed:
            self.message.time.completed = now
            await self._sessions.update_message(self.message)

        self._toolcalls.clear()
        self._text.clear()
        self._reasoning.clear()
        self._retry.clear_retry_state(self.session_id)
        await self._status.set(self.session_id, SessionStatus.idle())

        if self._blocked or self.message.error is not None:
            return ProcessResult.STOP
        return ProcessResult.CONTINUE
