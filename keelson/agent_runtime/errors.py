"""Provider failure taxonomy and classification.

Every exception escaping a stream attempt is mapped onto one of these
classes by ``classify_error``.  The first four are transient and retried by
the processor within their attempt and time budgets; the rest end the
step.  ``to_message_error`` gives the serializable form persisted on the
assistant message.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping
from typing import Any

import httpx
from pydantic import ValidationError

from keelson.agent_runtime.models.message import MessageError

_RETRYABLE_STATUS = frozenset({408, 409, 429})

_SOCKET_MARKERS = (
    "socket connection was closed",
    "closed unexpectedly",
    "connectionclosed",
    "econnreset",
    "econnrefused",
    "connection reset",
    "connection refused",
    "broken pipe",
)

_TIMEOUT_MARKERS = ("timed out", "timeout")

_STREAM_PARSE_MARKERS = (
    "ai_jsonparseerror",
    "json parsing failed",
    "json parse error",
    "is not valid json",
    "in json at position",
    "expecting value",
)


class ProviderError(Exception):
    """Base class of classified provider failures."""

    name = "ProviderError"
    is_retryable = False

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    def data(self) -> dict[str, Any]:
        return {"message": self.message, "is_retryable": self.is_retryable}

    def to_message_error(self) -> MessageError:
        return MessageError(name=self.name, data=self.data())

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class RateLimitError(ProviderError):
    """HTTP-level provider rejection (429, 5xx, ...) carrying optional retry headers."""

    name = "APIError"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        response_headers: Mapping[str, str] | None = None,
        is_retryable: bool | None = None,
        response_body: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.status_code = status_code
        self.response_headers = {k.lower(): v for k, v in response_headers.items()} if response_headers else None
        self.response_body = response_body
        if is_retryable is None:
            is_retryable = status_code is None or status_code in _RETRYABLE_STATUS or status_code >= 500
        self.is_retryable = is_retryable

    @property
    def error_type(self) -> str:
        return str(self.status_code) if self.status_code is not None else "unknown"

    def data(self) -> dict[str, Any]:
        data = super().data()
        data["status_code"] = self.status_code
        if self.response_headers:
            data["response_headers"] = self.response_headers
        if self.response_body:
            data["response_body"] = self.response_body
        return data


class SocketConnectionError(ProviderError):
    name = "SocketConnectionError"
    is_retryable = True


class RequestTimeoutError(ProviderError):
    """A provider request or stream attempt exceeded its deadline."""

    name = "TimeoutError"
    is_retryable = True


class StreamParseError(ProviderError):
    """Malformed incremental payload (typically corrupted SSE JSON)."""

    name = "StreamParseError"
    is_retryable = True

    def __init__(self, message: str, *, text: str | None = None, cause: BaseException | None = None) -> None:
        super().__init__(message, cause=cause)
        self.text = text

    def data(self) -> dict[str, Any]:
        data = super().data()
        if self.text is not None:
            data["text"] = self.text
        return data


class UsageShapeError(ProviderError):
    """The provider client could not interpret the usage payload of a step."""

    name = "UsageShapeError"


class MessageAbortedError(ProviderError):
    name = "MessageAbortedError"


class RetryTimeoutExceededError(ProviderError):
    """A server-directed wait is longer than the whole retry budget."""

    name = "RetryTimeoutExceededError"

    def __init__(self, retry_after_ms: float, max_timeout_ms: float) -> None:
        super().__init__(
            f"API requested a retry after {retry_after_ms / 1000 / 3600:.2f} hours, "
            f"longer than the retry timeout of {max_timeout_ms / 1000 / 3600:.2f} hours"
        )
        self.retry_after_ms = retry_after_ms
        self.max_timeout_ms = max_timeout_ms

    def data(self) -> dict[str, Any]:
        data = super().data()
        data["retry_after_ms"] = self.retry_after_ms
        data["max_timeout_ms"] = self.max_timeout_ms
        return data


class TerminalError(ProviderError):
    """Anything not covered by a retryable class."""

    name = "UnknownError"


RETRYABLE_ERRORS: tuple[type[ProviderError], ...] = (
    RateLimitError,
    SocketConnectionError,
    RequestTimeoutError,
    StreamParseError,
)


# -- Classification ----------------------------------------------------------


def _message_of(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def _matches(text: str, markers: tuple[str, ...]) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in markers)


def _from_http_status(exc: httpx.HTTPStatusError) -> RateLimitError:
    response = exc.response
    try:
        body = response.text
    except httpx.ResponseNotRead:
        body = None
    return RateLimitError(
        _message_of(exc),
        status_code=response.status_code,
        response_headers=dict(response.headers),
        response_body=body,
        cause=exc,
    )


def classify_error(exc: BaseException | Any) -> ProviderError:
    """Map any failure onto the provider error taxonomy.

    Checks run from the most specific signal (type) to the loosest
    (message text).  Values that are not exceptions at all (a stream
    ``error`` event may carry a string or dict) are classified by text.
    """
    if isinstance(exc, ProviderError):
        return exc
    if not isinstance(exc, BaseException):
        if isinstance(exc, Mapping):
            text = str(exc.get("message") or json.dumps(exc, default=str))
        else:
            text = str(exc)
        return classify_error(Exception(text))

    name = type(exc).__name__
    text = _message_of(exc)

    if isinstance(exc, asyncio.CancelledError) or name == "AbortError":
        return MessageAbortedError(text, cause=exc)
    if isinstance(exc, httpx.HTTPStatusError):
        return _from_http_status(exc)
    if isinstance(exc, httpx.TimeoutException | TimeoutError):
        return RequestTimeoutError(text, cause=exc)
    if isinstance(exc, httpx.TransportError | ConnectionError):
        return SocketConnectionError(text, cause=exc)
    if isinstance(exc, json.JSONDecodeError):
        return StreamParseError(text, text=exc.doc, cause=exc)
    if isinstance(exc, ValidationError):
        return StreamParseError(text, cause=exc)

    if name == "AI_JSONParseError" or _matches(text, _STREAM_PARSE_MARKERS):
        return StreamParseError(text, text=getattr(exc, "text", None), cause=exc)
    if _matches(text, _SOCKET_MARKERS):
        return SocketConnectionError(text, cause=exc)
    if name == "TimeoutError" or _matches(text, _TIMEOUT_MARKERS):
        return RequestTimeoutError(text, cause=exc)
    return TerminalError(text, cause=exc)
