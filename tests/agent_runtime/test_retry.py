"""Unit tests for the retry policy, budget table and cancellable sleep."""

from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime, timedelta
from email.utils import format_datetime

import pytest

from keelson.agent_runtime.errors import (
    RateLimitError,
    RequestTimeoutError,
    RetryTimeoutExceededError,
    SocketConnectionError,
    StreamParseError,
    TerminalError,
)
from keelson.agent_runtime.retry import (
    RETRY_MAX_DELAY_NO_HEADERS,
    RetryPolicy,
    RetryStateTable,
    retry_key,
)
from keelson.agent_runtime.settings import KeelsonSettings
from keelson.agent_runtime.signals import CancelSignal


class FakeClock:
    def __init__(self, start: int = 1_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def policy(clock: FakeClock) -> RetryPolicy:
    settings = KeelsonSettings(retry_timeout=60, max_retry_delay=20, min_retry_interval=5)
    return RetryPolicy(settings, states=RetryStateTable(), clock=clock)


def _rate_limit(headers: dict[str, str] | None) -> RateLimitError:
    return RateLimitError("Too Many Requests", status_code=429, response_headers=headers)


# ---------------------------------------------------------------------------
# Rate-limit delays
# ---------------------------------------------------------------------------


def test_retry_after_ms_with_jitter(policy: RetryPolicy) -> None:
    for _ in range(50):
        assert 5000 <= policy.delay(_rate_limit({"retry-after-ms": "5000"}), 1) <= 5500


def test_retry_after_over_ceiling_raises(policy: RetryPolicy) -> None:
    with pytest.raises(RetryTimeoutExceededError) as exc_info:
        policy.delay(_rate_limit({"retry-after-ms": "7200000"}), 1)

    assert exc_info.value.retry_after_ms == 7_200_000
    assert exc_info.value.max_timeout_ms == 60_000


def test_retry_after_seconds(policy: RetryPolicy) -> None:
    assert 2000 <= policy.delay(_rate_limit({"retry-after": "2"}), 1) <= 2200


def test_retry_after_header_names_are_case_insensitive(policy: RetryPolicy) -> None:
    assert 1000 <= policy.delay(_rate_limit({"Retry-After": "1"}), 1) <= 1100


def test_retry_after_http_date(policy: RetryPolicy) -> None:
    when = datetime.now(UTC) + timedelta(seconds=30)

    delay = policy.delay(_rate_limit({"retry-after": format_datetime(when, usegmt=True)}), 1)

    # Second resolution in the header, plus up to 10% jitter.
    assert 28_000 <= delay <= 33_000


def test_retry_after_above_max_delay_is_not_capped(policy: RetryPolicy) -> None:
    # max_retry_delay (20s) bounds backoff, not server-directed waits within the budget.
    assert 40_000 <= policy.delay(_rate_limit({"retry-after": "40"}), 1) <= 44_000


def test_headers_without_retry_after_use_floored_backoff(policy: RetryPolicy) -> None:
    headers = {"x-request-id": "abc"}

    first = policy.delay(_rate_limit(headers), 1)
    late = policy.delay(_rate_limit(headers), 10)

    # 2000ms backoff raised to the 5s minimum interval.
    assert 5000 <= first <= 5500
    # Capped at max_retry_delay.
    assert 20_000 <= late <= 22_000


def test_no_headers_uses_conservative_cap(policy: RetryPolicy) -> None:
    assert 2000 <= policy.delay(_rate_limit(None), 1) <= 2200
    assert 4000 <= policy.delay(_rate_limit(None), 2) <= 4400
    assert RETRY_MAX_DELAY_NO_HEADERS <= policy.delay(_rate_limit(None), 10) <= RETRY_MAX_DELAY_NO_HEADERS * 1.1


# ---------------------------------------------------------------------------
# Class schedules
# ---------------------------------------------------------------------------


def test_socket_error_delay(policy: RetryPolicy) -> None:
    assert [policy.socket_error_delay(n) for n in (1, 2, 3)] == [1000, 2000, 4000]


def test_timeout_delay(policy: RetryPolicy) -> None:
    assert [policy.timeout_delay(n) for n in (1, 2, 3, 4)] == [30_000, 60_000, 120_000, 120_000]


def test_stream_parse_error_delay(policy: RetryPolicy) -> None:
    assert policy.stream_parse_error_delay(1) == 1000
    assert policy.stream_parse_error_delay(3) == 4000
    assert policy.stream_parse_error_delay(20) == RETRY_MAX_DELAY_NO_HEADERS


def test_delay_for_dispatches_by_class(policy: RetryPolicy) -> None:
    assert policy.delay_for(SocketConnectionError("reset"), 2) == 2000
    assert policy.delay_for(RequestTimeoutError("slow"), 1) == 30_000
    assert policy.delay_for(StreamParseError("bad json"), 1) == 1000
    with pytest.raises(ValueError, match="not retryable"):
        policy.delay_for(TerminalError("boom"), 1)


def test_max_attempts(policy: RetryPolicy) -> None:
    assert policy.max_attempts(SocketConnectionError("x")) == 3
    assert policy.max_attempts(RequestTimeoutError("x")) == 3
    assert policy.max_attempts(StreamParseError("x")) == 3
    assert policy.max_attempts(_rate_limit(None)) is None


def test_retry_key() -> None:
    assert retry_key(_rate_limit(None)) == "429"
    assert retry_key(RateLimitError("x")) == "unknown"
    assert retry_key(SocketConnectionError("x")) == "SocketConnectionError"


# ---------------------------------------------------------------------------
# Budget accounting
# ---------------------------------------------------------------------------


def test_first_error_is_retryable(policy: RetryPolicy) -> None:
    check = policy.should_retry("ses_1", "429")

    assert check.should_retry is True
    assert check.elapsed_time == 0
    assert check.max_time == 60_000


def test_budget_exhausts_after_ceiling(policy: RetryPolicy, clock: FakeClock) -> None:
    policy.should_retry("ses_1", "429")

    for _ in range(59):
        clock.advance(1000)
        assert policy.should_retry("ses_1", "429").should_retry is True

    clock.advance(1000)
    check = policy.should_retry("ses_1", "429")
    assert check.should_retry is False
    assert check.elapsed_time == 60_000


def test_classification_change_resets_window(policy: RetryPolicy, clock: FakeClock) -> None:
    policy.should_retry("ses_1", "429")
    clock.advance(120_000)
    assert policy.should_retry("ses_1", "429").should_retry is False

    check = policy.should_retry("ses_1", "SocketConnectionError")

    assert check.should_retry is True
    assert check.elapsed_time == 0


def test_sessions_are_independent(policy: RetryPolicy, clock: FakeClock) -> None:
    policy.should_retry("ses_1", "429")
    clock.advance(120_000)
    policy.should_retry("ses_2", "429")

    assert policy.should_retry("ses_1", "429").should_retry is False
    assert policy.should_retry("ses_2", "429").should_retry is True


def test_update_and_clear_retry_state(policy: RetryPolicy, clock: FakeClock) -> None:
    policy.update_retry_state("ses_1", 500)  # no state yet: ignored
    assert policy.states.get("ses_1") is None

    policy.should_retry("ses_1", "429")
    policy.update_retry_state("ses_1", 1500)
    policy.update_retry_state("ses_1", 2500)
    state = policy.states.get("ses_1")
    assert state is not None
    assert state.total_retry_time == 4000

    clock.advance(10_000)
    assert policy.remaining_time("ses_1") == 50_000

    policy.clear_retry_state("ses_1")
    assert "ses_1" not in policy.states
    assert policy.remaining_time("ses_1") == 60_000


def test_default_policy_uses_shared_table_and_settings(set_env) -> None:
    set_env("KEELSON_RETRY_TIMEOUT", "120")

    policy = RetryPolicy()

    assert policy.retry_timeout_ms == 120_000
    policy.should_retry("ses_shared", "429")
    assert "ses_shared" in RetryPolicy().states


# ---------------------------------------------------------------------------
# Sleep
# ---------------------------------------------------------------------------


async def test_sleep_completes() -> None:
    start = time.monotonic()

    assert await RetryPolicy.sleep(50, CancelSignal()) is True
    assert time.monotonic() - start >= 0.04


async def test_sleep_returns_early_on_abort() -> None:
    signal = CancelSignal()
    asyncio.get_running_loop().call_later(0.02, signal.abort)
    start = time.monotonic()

    assert await RetryPolicy.sleep(10_000, signal) is False
    assert time.monotonic() - start < 1


async def test_sleep_on_aborted_signal_returns_immediately() -> None:
    signal = CancelSignal()
    signal.abort()

    assert await RetryPolicy.sleep(10_000, signal) is False


async def test_sleep_survives_sibling_deadline() -> None:
    governing = CancelSignal()
    request = governing.child(timeout=0.01)
    wait = governing.child(timeout=5)

    assert await RetryPolicy.sleep(100, wait) is True
    assert request.aborted is True
    assert governing.aborted is False
    wait.close()
