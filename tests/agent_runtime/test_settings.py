"""Tests for environment-driven settings."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from keelson.agent_runtime.settings import KeelsonSettings, get_settings


def test_defaults() -> None:
    settings = KeelsonSettings()

    assert settings.retry_timeout_ms == 604_800_000
    assert settings.max_retry_delay_ms == 1_200_000
    assert settings.min_retry_interval_ms == 30_000
    assert settings.stream_chunk_timeout_ms == 120_000
    assert settings.log_json is False


def test_env_overrides_are_cached(set_env) -> None:
    set_env("KEELSON_RETRY_TIMEOUT", "3600")
    set_env("KEELSON_LOG_JSON", "true")

    settings = get_settings()

    assert settings.retry_timeout_ms == 3_600_000
    assert settings.log_json is True
    assert get_settings() is settings


def test_dotenv_file(tmp_path) -> None:
    (tmp_path / ".env").write_text("KEELSON_MAX_STEPS=7\n")

    assert KeelsonSettings().max_steps == 7


def test_rejects_non_positive_deadlines() -> None:
    with pytest.raises(ValidationError):
        KeelsonSettings(stream_step_timeout_ms=0)
