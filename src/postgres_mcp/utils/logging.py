"""Logging setup and masking helpers."""

import logging
import sys
from typing import TextIO

LOGGER_NAME = "postgres-mcp"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str | int = "INFO", stream: TextIO | None = None) -> logging.Logger:
    """Configure the ``postgres-mcp`` logger hierarchy.

    Repeated calls replace the handler instead of stacking a new one.

    Args:
        level: Level name or number.
        stream: Output stream, stderr by default.

    Returns:
        The configured package logger.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger(LOGGER_NAME)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False

    # Quiet chatty transport loggers unless debugging
    if level > logging.DEBUG:
        logging.getLogger("mcp.server.streamable_http").setLevel(logging.WARNING)
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    return root


def mask_sensitive(value: str | None, keep: int = 8) -> str:
    """Return a log-safe preview of a token or code.

    Args:
        value: Secret value.
        keep: Number of leading characters to keep.

    Returns:
        ``"<prefix>..."`` for long values, ``"***"`` for short ones and
        ``"<none>"`` for empty values.
    """
    if not value:
        return "<none>"
    if len(value) <= keep * 2:
        return "***"
    return f"{value[:keep]}..."
