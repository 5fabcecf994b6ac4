"""Logging setup: loguru is the only sink.

The stream processor, the step loop and the collaborators log through
``logging.getLogger(__name__)``; the managers, the bus and the retry engine
use loguru directly.  ``setup_logging`` routes the former into the latter.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from keelson.agent_runtime.settings import KeelsonSettings

TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

# Provider HTTP clients log every request at INFO.
QUIET_LOGGERS = ("httpx", "httpcore")


class _InterceptHandler(logging.Handler):
    """Forward stdlib records to loguru, keeping the original call site."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).bind(stdlib=record.name).log(level, record.getMessage())


def setup_logging(settings: KeelsonSettings | None = None, *, sink: Any = None) -> int:
    """Install the loguru sink and intercept stdlib logging.

    Level and format come from *settings* (``KEELSON_LOG_LEVEL``,
    ``KEELSON_LOG_JSON``).  *sink* defaults to stderr; anything loguru
    accepts as a sink works.  Returns the loguru handler id.
    """
    if settings is None:
        from keelson.agent_runtime.settings import get_settings

        settings = get_settings()
    level = settings.log_level.upper()

    logger.remove()
    if settings.log_json:
        handler_id = logger.add(sink or sys.stderr, level=level, serialize=True)
    else:
        handler_id = logger.add(sink or sys.stderr, level=level, format=TEXT_FORMAT)

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug("Logging configured: level={} json={}", level, settings.log_json)
    return handler_id
