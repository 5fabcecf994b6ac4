"""Retry policy: backoff delays, per-session retry budget, cancellable sleep.

Budget accounting is per session and per error classification: the window
starts at the first failure of a classification and is measured in wall
clock time, so many short waits and one long wait consume it alike.  A new
classification opens a fresh window.
"""

from __future__ import annotations

import asyncio
import math
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

from loguru import logger

from keelson.agent_runtime.errors import (
    ProviderError,
    RateLimitError,
    RequestTimeoutError,
    RetryTimeoutExceededError,
    SocketConnectionError,
    StreamParseError,
)
from keelson.agent_runtime.settings import KeelsonSettings, get_settings
from keelson.agent_runtime.signals import CancelSignal

RETRY_INITIAL_DELAY = 2000
RETRY_BACKOFF_FACTOR = 2
RETRY_MAX_DELAY_NO_HEADERS = 30_000

SOCKET_ERROR_INITIAL_DELAY = 1000
SOCKET_ERROR_BACKOFF_FACTOR = 2

TIMEOUT_DELAYS = (30_000, 60_000, 120_000)

STREAM_PARSE_ERROR_INITIAL_DELAY = 1000
STREAM_PARSE_ERROR_BACKOFF_FACTOR = 2


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


# -- Retry state table -------------------------------------------------------


@dataclass
class RetryState:
    error_type: str
    start_time: int
    total_retry_time: int = 0


@dataclass(frozen=True)
class RetryCheck:
    should_retry: bool
    elapsed_time: int
    max_time: int


class RetryStateTable:
    """Process-wide ``session_id -> RetryState`` map.

    Every operation holds the lock, so concurrent sessions (or threads) only
    ever see whole entries.
    """

    def __init__(self) -> None:
        self._states: dict[str, RetryState] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> RetryState | None:
        with self._lock:
            state = self._states.get(session_id)
            return None if state is None else RetryState(state.error_type, state.start_time, state.total_retry_time)

    def check(self, session_id: str, error_type: str, *, max_time: int, now: int) -> RetryCheck:
        with self._lock:
            state = self._states.get(session_id)
            if state is None or state.error_type != error_type:
                self._states[session_id] = RetryState(error_type=error_type, start_time=now)
                return RetryCheck(should_retry=True, elapsed_time=0, max_time=max_time)
            elapsed = now - state.start_time
        if elapsed >= max_time:
            logger.info(
                "Retry timeout exceeded: session={} error_type={} elapsed={}ms max={}ms",
                session_id,
                error_type,
                elapsed,
                max_time,
            )
            return RetryCheck(should_retry=False, elapsed_time=elapsed, max_time=max_time)
        return RetryCheck(should_retry=True, elapsed_time=elapsed, max_time=max_time)

    def add_delay(self, session_id: str, delay_ms: int) -> None:
        with self._lock:
            state = self._states.get(session_id)
            if state is not None:
                state.total_retry_time += delay_ms

    def clear(self, session_id: str) -> None:
        with self._lock:
            self._states.pop(session_id, None)

    def clear_all(self) -> None:
        with self._lock:
            self._states.clear()

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._states

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)


retry_states = RetryStateTable()


# -- Policy ------------------------------------------------------------------


def retry_key(error: ProviderError) -> str:
    """Classification key used for budget windows (status code for API errors)."""
    if isinstance(error, RateLimitError):
        return error.error_type
    return type(error).__name__


def add_jitter(delay: float) -> int:
    """Add 0-10% random jitter."""
    return round(delay + random.random() * 0.1 * delay)  # noqa: S311


def _parse_retry_after(headers: dict[str, str]) -> float | None:
    """Server-directed wait in ms from ``retry-after-ms`` / ``retry-after`` headers."""
    retry_after_ms = headers.get("retry-after-ms")
    if retry_after_ms:
        try:
            value = float(retry_after_ms)
        except ValueError:
            value = math.nan
        if math.isfinite(value):
            return max(0.0, value)

    retry_after = headers.get("retry-after")
    if not retry_after:
        return None
    try:
        seconds = float(retry_after)
    except ValueError:
        seconds = math.nan
    if math.isfinite(seconds):
        return max(0.0, math.ceil(seconds * 1000))

    try:
        when = parsedate_to_datetime(retry_after)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    delta = math.ceil((when - datetime.now(UTC)).total_seconds() * 1000)
    return float(delta) if delta > 0 else None


class RetryPolicy:
    """Delay schedules and retry budget for one process.

    ``states`` defaults to the module-level table; tests pass their own.
    ``clock`` returns epoch milliseconds.
    """

    def __init__(
        self,
        settings: KeelsonSettings | None = None,
        *,
        states: RetryStateTable | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._settings = settings or get_settings()
        self.states = states if states is not None else retry_states
        self._clock = clock

    @property
    def retry_timeout_ms(self) -> int:
        return self._settings.retry_timeout_ms

    # -- Delays ----------------------------------------------------------------

    def delay(self, error: RateLimitError, attempt: int) -> int:
        """Delay in ms before re-attempting after an API error.

        Raises ``RetryTimeoutExceededError`` when the server asks for a wait
        longer than the whole retry budget.
        """
        headers = error.response_headers
        if headers:
            retry_after = _parse_retry_after(headers)
            if retry_after is not None:
                if retry_after > self.retry_timeout_ms:
                    raise RetryTimeoutExceededError(retry_after, self.retry_timeout_ms)
                logger.info("Using retry-after from response headers: {}ms", retry_after)
                return add_jitter(retry_after)

            backoff = min(
                RETRY_INITIAL_DELAY * RETRY_BACKOFF_FACTOR ** (attempt - 1),
                self._settings.max_retry_delay_ms,
            )
            return add_jitter(max(backoff, self._settings.min_retry_interval_ms))

        backoff = min(RETRY_INITIAL_DELAY * RETRY_BACKOFF_FACTOR ** (attempt - 1), RETRY_MAX_DELAY_NO_HEADERS)
        return add_jitter(backoff)

    def socket_error_delay(self, attempt: int) -> int:
        return SOCKET_ERROR_INITIAL_DELAY * SOCKET_ERROR_BACKOFF_FACTOR ** (attempt - 1)

    def timeout_delay(self, attempt: int) -> int:
        index = min(max(attempt, 1) - 1, len(TIMEOUT_DELAYS) - 1)
        return TIMEOUT_DELAYS[index]

    def stream_parse_error_delay(self, attempt: int) -> int:
        return min(
            STREAM_PARSE_ERROR_INITIAL_DELAY * STREAM_PARSE_ERROR_BACKOFF_FACTOR ** (attempt - 1),
            RETRY_MAX_DELAY_NO_HEADERS,
        )

    def delay_for(self, error: ProviderError, attempt: int) -> int:
        match error:
            case RateLimitError():
                return self.delay(error, attempt)
            case SocketConnectionError():
                return self.socket_error_delay(attempt)
            case RequestTimeoutError():
                return self.timeout_delay(attempt)
            case StreamParseError():
                return self.stream_parse_error_delay(attempt)
        msg = f"{type(error).__name__} is not retryable"
        raise ValueError(msg)

    def max_attempts(self, error: ProviderError) -> int | None:
        """Per-class attempt cap; ``None`` means bounded by time only."""
        match error:
            case SocketConnectionError():
                return self._settings.socket_error_max_retries
            case RequestTimeoutError():
                return self._settings.timeout_max_retries
            case StreamParseError():
                return self._settings.stream_parse_error_max_retries
        return None

    # -- Budget ----------------------------------------------------------------

    def should_retry(self, session_id: str, error_type: str) -> RetryCheck:
        return self.states.check(session_id, error_type, max_time=self.retry_timeout_ms, now=self._clock())

    def update_retry_state(self, session_id: str, delay_ms: int) -> None:
        self.states.add_delay(session_id, delay_ms)

    def clear_retry_state(self, session_id: str) -> None:
        self.states.clear(session_id)

    def remaining_time(self, session_id: str) -> int:
        """Milliseconds left in the current budget window (full budget if none is open)."""
        state = self.states.get(session_id)
        if state is None:
            return self.retry_timeout_ms
        return max(0, self.retry_timeout_ms - (self._clock() - state.start_time))

    # -- Sleep -----------------------------------------------------------------

    @staticmethod
    async def sleep(ms: float, signal: CancelSignal) -> bool:
        """Wait *ms* milliseconds.

        Returns ``True`` when the full duration elapsed and ``False`` as
        soon as *signal* fires.  Nothing is left scheduled either way.
        """
        if signal.aborted:
            return False
        try:
            await asyncio.wait_for(signal.wait(), timeout=max(ms, 0) / 1000)
        except TimeoutError:
            return True
        return False
