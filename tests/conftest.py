"""Shared test fixtures.

Settings are read from ``KEELSON_*`` environment variables and cached, so
every test starts from a clean environment and an empty settings cache.
The process-wide retry-state table is emptied around each test as well.
"""

from __future__ import annotations

import os
from collections.abc import Iterator

import pytest

from keelson.agent_runtime.retry import retry_states
from keelson.agent_runtime.settings import _get_settings_cached


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> Iterator[None]:
    for key in list(os.environ):
        if key.startswith("KEELSON_"):
            monkeypatch.delenv(key)
    # Keep a stray .env in the working directory from leaking into settings.
    monkeypatch.chdir(tmp_path)
    _get_settings_cached.cache_clear()
    retry_states.clear_all()
    yield
    _get_settings_cached.cache_clear()
    retry_states.clear_all()


@pytest.fixture
def set_env(monkeypatch: pytest.MonkeyPatch):
    """Set ``KEELSON_*`` variables for one test."""

    def _apply(key: str, value: str) -> None:
        monkeypatch.setenv(key, value)
        _get_settings_cached.cache_clear()

    return _apply
