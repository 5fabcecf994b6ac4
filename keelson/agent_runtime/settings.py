"""Runtime configuration loaded from KEELSON_* environment variables."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class KeelsonSettings(BaseSettings):
    """Keelson agent runtime settings.

    All fields are read from environment variables with the ``KEELSON_``
    prefix.  For example, ``KEELSON_RETRY_TIMEOUT=3600`` maps to
    ``retry_timeout``.

    Provider credentials are **not** managed here -- the provider clients
    that open event streams read them on their own.
    """

    model_config = SettingsConfigDict(
        env_prefix="KEELSON_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"

    log_json: bool = False
    """Emit one JSON object per log record instead of the colored text format."""

    # -- Data storage ----------------------------------------------------------
    data_root: str = "./data"
    """Root directory for the local JSON storage (sessions, messages, parts)."""

    data_prefix: str | None = None
    """Optional namespace inserted into all storage paths."""

    project_id: str = "global"

    # -- Retry -----------------------------------------------------------------
    retry_timeout: int = Field(default=604800, ge=0)
    """Seconds a session may keep retrying one error classification (7 days).

    The window resets whenever the error classification changes.  A
    server-directed retry-after longer than this fails the step at once.
    """

    max_retry_delay: int = Field(default=1200, ge=0)
    """Upper bound in seconds for one exponential backoff wait (20 minutes)."""

    min_retry_interval: int = Field(default=30, ge=0)
    """Floor in seconds for backoff waits when the provider sent headers but no retry-after."""

    socket_error_max_retries: int = Field(default=3, ge=0)
    timeout_max_retries: int = Field(default=3, ge=0)
    stream_parse_error_max_retries: int = Field(default=3, ge=0)

    # -- Stream deadlines ------------------------------------------------------
    stream_chunk_timeout_ms: int = Field(default=120_000, gt=0)
    """Longest silence tolerated between two stream events."""

    stream_step_timeout_ms: int = Field(default=600_000, gt=0)
    """Deadline for one stream attempt (one provider request)."""

    # -- Loop ------------------------------------------------------------------
    max_steps: int = Field(default=100, gt=0)

    # -- Helpers ---------------------------------------------------------------

    @property
    def retry_timeout_ms(self) -> int:
        return self.retry_timeout * 1000

    @property
    def max_retry_delay_ms(self) -> int:
        return self.max_retry_delay * 1000

    @property
    def min_retry_interval_ms(self) -> int:
        return self.min_retry_interval * 1000


def get_settings() -> KeelsonSettings:
    """Return a cached settings instance.

    Reads from environment variables and ``.env`` on first call, then returns
    the same object.  Call ``_get_settings_cached.cache_clear()`` in tests to force a
    re-read after overriding env vars.
    """
    return _get_settings_cached()


@lru_cache(maxsize=1)
def _get_settings_cached() -> KeelsonSettings:
    return KeelsonSettings()
