from __future__ import annotations

import os
import sys

from loguru import logger

_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<6} | {name}:{function}:{line} | {message}"
_CONFIGURED_LEVEL: str | None = None


def configure_logging(level: str | None = None) -> None:
    """Enable library logs on stderr once per level.

    The level defaults to ``CAI_LOG_LEVEL`` and then ``INFO``.
    """
    global _CONFIGURED_LEVEL
    resolved = (level or os.getenv("CAI_LOG_LEVEL", "INFO")).upper()
    if resolved == _CONFIGURED_LEVEL:
        return

    logger.remove()
    logger.add(
        sys.stderr,
        level=resolved,
        format=_FORMAT,
        backtrace=False,
        diagnose=False,
    )
    logger.enable("cai_client")
    _CONFIGURED_LEVEL = resolved
