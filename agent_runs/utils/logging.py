from __future__ import annotations

import os
import sys

from loguru import logger


LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} [{level}] {name}: {message}"


def configure_logging(level: str | None = None) -> None:
    """Route loguru output to stderr at the requested level (env AGENT_RUNS_LOG_LEVEL by default)."""
    resolved = (level or os.getenv("AGENT_RUNS_LOG_LEVEL") or "INFO").strip().upper()
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=resolved)
