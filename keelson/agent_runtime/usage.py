"""Usage normalizer: provider token counts -> tokens + cost.

Providers report usage in many shapes (AI-SDK camelCase, OpenAI
``prompt_tokens``, nested ``{total, cacheRead}`` objects, raw provider usage
buried in ``provider_metadata``).  ``get_usage`` accepts all of them and
never raises: anything unreadable counts as zero.

Costs are computed with ``decimal.Decimal``; a non-finite intermediate
collapses the step cost to 0 instead of poisoning the persisted message.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

from keelson.agent_runtime.models.message import CacheTokens, TokenUsage
from keelson.agent_runtime.models.provider import ModelCost, ModelInfo

# Providers whose reported input count already excludes cache reads.
CACHE_EXCLUSIVE_PROVIDERS = frozenset({"anthropic", "bedrock", "google-vertex-anthropic"})

CONTEXT_OVER_200K_THRESHOLD = 200_000
_PER_MILLION = Decimal(1_000_000)

_INPUT_KEYS = ("inputTokens", "input_tokens", "promptTokens", "prompt_tokens", "input")
_OUTPUT_KEYS = ("outputTokens", "output_tokens", "completionTokens", "completion_tokens", "output")
_REASONING_KEYS = ("reasoningTokens", "reasoning_tokens", "reasoning")
_CACHED_KEYS = ("cachedInputTokens", "cached_input_tokens", "cacheReadInputTokens", "cache_read_input_tokens")
_CACHE_WRITE_KEYS = (
    "cacheCreationInputTokens",
    "cache_creation_input_tokens",
    "cacheWriteInputTokens",
    "cache_write_input_tokens",
)


class UsageResult(BaseModel):
    cost: float = 0.0
    tokens: TokenUsage = Field(default_factory=TokenUsage)


# -- Scalars -----------------------------------------------------------------


def to_decimal(value: Any) -> Decimal:
    """Finite ``int``/``float``/``Decimal`` -> ``Decimal``; anything else -> ``Decimal("NaN")``."""
    if isinstance(value, bool):
        return Decimal("NaN")
    if isinstance(value, Decimal):
        return value if value.is_finite() else Decimal("NaN")
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float) and math.isfinite(value):
        return Decimal(str(value))
    return Decimal("NaN")


def safe_token_value(value: Any, context: str = "") -> int:
    """Coerce a raw token count to a non-negative int, 0 when unusable."""
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int | float):
        logger.debug("Invalid token value for {}: {!r}", context or "usage", value)
        return 0
    if isinstance(value, float) and not math.isfinite(value):
        logger.debug("Non-finite token value for {}: {!r}", context or "usage", value)
        return 0
    return max(0, int(value))


def to_finish_reason(value: Any) -> str:
    """Canonicalize a finish reason to a plain string (``"unknown"`` when unrecognizable)."""
    if isinstance(value, str):
        return value
    for key in ("type", "reason", "unified"):
        candidate = _read(value, key)
        if isinstance(candidate, str):
            return candidate
    return "unknown"


# -- Field access ------------------------------------------------------------


def _read(source: Any, key: str) -> Any:
    if source is None or isinstance(source, str | int | float):
        return None
    if isinstance(source, Mapping):
        return source.get(key)
    return getattr(source, key, None)


def _first(source: Any, keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = _read(source, key)
        if value is not None:
            return value
    return None


def _is_nested(value: Any) -> bool:
    return value is not None and not isinstance(value, str | int | float)


# -- Provider identity -------------------------------------------------------


def _provider_keys(metadata: Mapping[str, Any] | None) -> list[str]:
    if not isinstance(metadata, Mapping):
        return []
    return [str(key) for key in metadata]


def _excludes_cached_tokens(model: ModelInfo | None, metadata: Mapping[str, Any] | None) -> bool:
    if model is not None and model.provider_id in CACHE_EXCLUSIVE_PROVIDERS:
        return True
    return any(key in CACHE_EXCLUSIVE_PROVIDERS for key in _provider_keys(metadata))


def _metadata_usage(metadata: Mapping[str, Any] | None) -> Any:
    """First ``metadata[<provider>].usage`` object, if any."""
    if not isinstance(metadata, Mapping):
        return None
    for provider_data in metadata.values():
        usage = _read(provider_data, "usage")
        if usage is not None:
            return usage
    return None


def _cache_write_from_metadata(metadata: Mapping[str, Any] | None) -> Any:
    if not isinstance(metadata, Mapping):
        return None
    anthropic = metadata.get("anthropic")
    value = _read(anthropic, "cacheCreationInputTokens")
    if value is None:
        value = _read(_read(metadata.get("bedrock"), "usage"), "cacheWriteInputTokens")
    return value


# -- Normalization -----------------------------------------------------------


def _normalize_tokens(
    model: ModelInfo | None,
    usage: Any,
    metadata: Mapping[str, Any] | None,
) -> TokenUsage:
    raw_input = _first(usage, _INPUT_KEYS)
    raw_output = _first(usage, _OUTPUT_KEYS)

    if raw_input is None and raw_output is None:
        fallback = _metadata_usage(metadata)
        if fallback is not None:
            logger.debug("Usage missing standard fields, reading provider metadata usage")
            usage = fallback
            raw_input = _first(usage, _INPUT_KEYS)
            raw_output = _first(usage, _OUTPUT_KEYS)

    cached = _first(usage, _CACHED_KEYS)
    reasoning = _first(usage, _REASONING_KEYS)
    cache_write = _cache_write_from_metadata(metadata)
    if cache_write is None:
        cache_write = _first(usage, _CACHE_WRITE_KEYS)

    if _is_nested(raw_input):
        nested = raw_input
        raw_input = _read(nested, "total")
        if raw_input is None:
            raw_input = safe_token_value(_read(nested, "noCache"), "inputTokens.noCache") + safe_token_value(
                _read(nested, "cacheRead"), "inputTokens.cacheRead"
            )
        if cached is None:
            cached = _read(nested, "cacheRead")
        if cache_write is None:
            cache_write = _read(nested, "cacheWrite")

    if _is_nested(raw_output):
        nested = raw_output
        raw_output = _read(nested, "total")
        if raw_output is None:
            raw_output = safe_token_value(_read(nested, "text"), "outputTokens.text")
        if reasoning is None:
            reasoning = _read(nested, "reasoning")

    cache_read = safe_token_value(cached, "cachedInputTokens")
    input_tokens = safe_token_value(raw_input, "inputTokens")
    if not _excludes_cached_tokens(model, metadata):
        input_tokens = max(0, input_tokens - cache_read)

    return TokenUsage(
        input=input_tokens,
        output=safe_token_value(raw_output, "outputTokens"),
        reasoning=safe_token_value(reasoning, "reasoningTokens"),
        cache=CacheTokens(read=cache_read, write=safe_token_value(cache_write, "cacheWriteTokens")),
    )


def _pricing(model: ModelInfo | None, tokens: TokenUsage) -> ModelCost | None:
    if model is None or model.cost is None:
        return None
    cost = model.cost
    if cost.context_over_200k is not None and tokens.input + tokens.cache.read > CONTEXT_OVER_200K_THRESHOLD:
        return cost.context_over_200k
    return cost


def _compute_cost(pricing: ModelCost | None, tokens: TokenUsage) -> float:
    if pricing is None:
        return 0.0
    total = (
        to_decimal(tokens.input) * to_decimal(pricing.input)
        + to_decimal(tokens.output) * to_decimal(pricing.output)
        + to_decimal(tokens.cache.read) * to_decimal(pricing.cache_read)
        + to_decimal(tokens.cache.write) * to_decimal(pricing.cache_write)
        # Reasoning is billed at the output rate.
        + to_decimal(tokens.reasoning) * to_decimal(pricing.output)
    ) / _PER_MILLION
    if not total.is_finite():
        logger.debug("Non-finite step cost, recording 0")
        return 0.0
    return max(0.0, float(total))


def get_usage(
    model: ModelInfo | None,
    usage: Any,
    metadata: Mapping[str, Any] | None = None,
) -> UsageResult:
    """Normalize one step's usage.  Total: returns a zero record for unusable input."""
    if usage is None and _metadata_usage(metadata) is None:
        return UsageResult()
    tokens = _normalize_tokens(model, usage, metadata)
    return UsageResult(cost=_compute_cost(_pricing(model, tokens), tokens), tokens=tokens)
