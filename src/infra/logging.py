"""structlog setup for processes that embed the memory engine.

The engine modules only call structlog.get_logger(); the host process calls
setup_logging() (or configure_from_settings()) once before the first event.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, TextIO

import structlog

if TYPE_CHECKING:
    from src.config.settings import Settings


def _resolve_level(log_level: str) -> int:
    level = logging.getLevelName(log_level.strip().upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level!r}")
    return level


def setup_logging(
    *,
    json_output: bool = True,
    log_level: str = "INFO",
    stream: TextIO | None = None,
) -> None:
    """Configure structlog output.

    Args:
        json_output: One JSON object per line when True, colourless console lines otherwise.
        log_level: Minimum level (DEBUG, INFO, WARNING, ERROR). qmd debug stages
            are logged at INFO, so they survive the default level.
        stream: Destination; defaults to the current sys.stdout.

    Raises:
        ValueError: log_level is not a known level name.
    """
    level = _resolve_level(log_level)

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stdout),
        cache_logger_on_first_use=True,
    )


def configure_from_settings(settings: Settings) -> None:
    """setup_logging() driven by Settings.log_json / Settings.log_level."""
    setup_logging(json_output=settings.log_json, log_level=settings.log_level)
