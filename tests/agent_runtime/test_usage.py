"""Unit tests for the usage normalizer."""

from __future__ import annotations

import math
from decimal import Decimal
from types import SimpleNamespace

import pytest

from keelson.agent_runtime.models.provider import ModelCost, ModelInfo
from keelson.agent_runtime.usage import get_usage, safe_token_value, to_decimal, to_finish_reason


@pytest.fixture
def openai_model() -> ModelInfo:
    return ModelInfo(id="gpt-test", provider_id="openai", cost=ModelCost(input=2, output=8, cache_read=0.5))


@pytest.fixture
def anthropic_model() -> ModelInfo:
    return ModelInfo(id="claude-test", provider_id="anthropic", cost=ModelCost(input=3, output=15, cache_read=0.3))


# ---------------------------------------------------------------------------
# get_usage
# ---------------------------------------------------------------------------


def test_missing_usage_is_zero(openai_model: ModelInfo) -> None:
    result = get_usage(openai_model, None)

    assert result.cost == 0
    assert result.tokens.model_dump() == {
        "input": 0,
        "output": 0,
        "reasoning": 0,
        "cache": {"read": 0, "write": 0},
    }


def test_camel_case_fields(openai_model: ModelInfo) -> None:
    result = get_usage(openai_model, {"inputTokens": 1000, "outputTokens": 500, "reasoningTokens": 100})

    assert result.tokens.input == 1000
    assert result.tokens.output == 500
    assert result.tokens.reasoning == 100
    # (1000 * 2 + 500 * 8 + 100 * 8) / 1M
    assert result.cost == pytest.approx(0.0068)


def test_short_and_openai_style_keys(openai_model: ModelInfo) -> None:
    short = get_usage(openai_model, {"input": 10, "output": 2})
    openai_style = get_usage(openai_model, {"prompt_tokens": 10, "completion_tokens": 2})

    assert short.tokens == openai_style.tokens
    assert short.tokens.input == 10
    assert short.tokens.output == 2


def test_attribute_object(openai_model: ModelInfo) -> None:
    usage = SimpleNamespace(inputTokens=40, outputTokens=4)

    result = get_usage(openai_model, usage)

    assert result.tokens.input == 40
    assert result.tokens.output == 4


@pytest.mark.parametrize("bad", ["12", None, math.nan, math.inf, True, {"weird": 1}, [1, 2]])
def test_unusable_values_become_zero(openai_model: ModelInfo, bad: object) -> None:
    result = get_usage(openai_model, {"inputTokens": bad, "outputTokens": 7})

    assert result.tokens.input == 0
    assert result.tokens.output == 7
    assert math.isfinite(result.cost)


def test_nested_input_tokens_cache_read(openai_model: ModelInfo) -> None:
    result = get_usage(openai_model, {"inputTokens": {"total": 100, "cacheRead": 20}, "outputTokens": 5})

    assert result.tokens.cache.read == 20
    # openai includes cache reads in the input count.
    assert result.tokens.input == 80


def test_top_level_cached_count_wins(openai_model: ModelInfo) -> None:
    usage = {"inputTokens": {"total": 100, "cacheRead": 20}, "cachedInputTokens": 30}

    result = get_usage(openai_model, usage)

    assert result.tokens.cache.read == 30
    assert result.tokens.input == 70


def test_nested_output_tokens(openai_model: ModelInfo) -> None:
    result = get_usage(openai_model, {"inputTokens": 1, "outputTokens": {"total": 50, "text": 30, "reasoning": 20}})

    assert result.tokens.output == 50
    assert result.tokens.reasoning == 20


def test_cache_exclusive_provider_keeps_input(anthropic_model: ModelInfo) -> None:
    result = get_usage(anthropic_model, {"inputTokens": 100, "outputTokens": 1, "cachedInputTokens": 40})

    assert result.tokens.input == 100
    assert result.tokens.cache.read == 40


def test_provider_identity_from_metadata(openai_model: ModelInfo) -> None:
    proxied = ModelInfo(id="x", provider_id="my-proxy")
    usage = {"inputTokens": 100, "cachedInputTokens": 40}

    with_metadata = get_usage(proxied, usage, {"bedrock": {"usage": {}}})
    without_metadata = get_usage(proxied, usage)

    assert with_metadata.tokens.input == 100
    assert without_metadata.tokens.input == 60


def test_cache_subtraction_clamps_at_zero(openai_model: ModelInfo) -> None:
    result = get_usage(openai_model, {"inputTokens": 10, "cachedInputTokens": 50})

    assert result.tokens.input == 0
    assert result.tokens.cache.read == 50


def test_cache_write_from_metadata(anthropic_model: ModelInfo) -> None:
    anthropic = get_usage(anthropic_model, {"inputTokens": 1}, {"anthropic": {"cacheCreationInputTokens": 12}})
    bedrock = get_usage(anthropic_model, {"inputTokens": 1}, {"bedrock": {"usage": {"cacheWriteInputTokens": 9}}})

    assert anthropic.tokens.cache.write == 12
    assert bedrock.tokens.cache.write == 9


def test_metadata_usage_fallback(anthropic_model: ModelInfo) -> None:
    metadata = {"anthropic": {"usage": {"input_tokens": 300, "output_tokens": 20, "cache_read_input_tokens": 100}}}

    result = get_usage(anthropic_model, {}, metadata)

    assert result.tokens.input == 300
    assert result.tokens.output == 20
    assert result.tokens.cache.read == 100


def test_context_over_200k_pricing() -> None:
    model = ModelInfo(
        id="big",
        provider_id="anthropic",
        cost=ModelCost(input=3, output=15, context_over_200k=ModelCost(input=6, output=22.5)),
    )

    small = get_usage(model, {"inputTokens": 100_000, "outputTokens": 0})
    large = get_usage(model, {"inputTokens": 250_000, "outputTokens": 0})

    assert small.cost == pytest.approx(0.3)
    assert large.cost == pytest.approx(1.5)


def test_missing_pricing_costs_nothing() -> None:
    result = get_usage(ModelInfo(id="free", provider_id="local"), {"inputTokens": 10, "outputTokens": 10})

    assert result.cost == 0
    assert result.tokens.input == 10


def test_cost_is_exact_decimal_sum() -> None:
    model = ModelInfo(id="m", provider_id="openai", cost=ModelCost(input=0.1, output=0.2))

    result = get_usage(model, {"inputTokens": 3_000_000, "outputTokens": 0})

    assert result.cost == 0.3


# ---------------------------------------------------------------------------
# Scalars
# ---------------------------------------------------------------------------


def test_to_decimal() -> None:
    assert to_decimal(5) == Decimal(5)
    assert to_decimal(0.1) == Decimal("0.1")
    assert to_decimal(math.inf).is_nan()
    assert to_decimal(math.nan).is_nan()
    assert to_decimal("3").is_nan()
    assert to_decimal(None).is_nan()
    assert to_decimal(True).is_nan()


def test_safe_token_value() -> None:
    assert safe_token_value(12) == 12
    assert safe_token_value(12.9) == 12
    assert safe_token_value(-4) == 0
    assert safe_token_value(None) == 0
    assert safe_token_value("12") == 0


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("stop", "stop"),
        ("tool-calls", "tool-calls"),
        ({"type": "length"}, "length"),
        ({"reason": "content-filter"}, "content-filter"),
        ({"unified": "stop", "raw": "end_turn"}, "stop"),
        (SimpleNamespace(type="tool-calls"), "tool-calls"),
        (None, "unknown"),
        ({"other": 1}, "unknown"),
        (42, "unknown"),
    ],
)
def test_to_finish_reason(value: object, expected: str) -> None:
    assert to_finish_reason(value) == expected
