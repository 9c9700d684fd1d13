"""structlog setup for ideacode.

Replies stream to stdout, so log lines go to stderr or, when
``logging.file`` is set, are appended to that file.
"""

import logging
import sys
from pathlib import Path
from typing import TextIO

import structlog

from ideacode.config import get_config

# Libraries that log every request at INFO.
NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite")

_log_stream: TextIO | None = None


def _open_stream(path: str) -> TextIO:
    global _log_stream
    if _log_stream is not None and not _log_stream.closed:
        _log_stream.close()
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    _log_stream = target.open("a", encoding="utf-8")
    return _log_stream


def configure_logging() -> None:
    """Apply ``config.logging`` to structlog and the stdlib loggers we depend on."""
    settings = get_config().logging
    level = getattr(logging, settings.level.upper(), logging.WARNING)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    stream = _open_stream(settings.file) if settings.file else sys.stderr
    renderer = (
        structlog.dev.ConsoleRenderer(colors=stream.isatty())
        if settings.format == "console"
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    return structlog.get_logger(name) if name else structlog.get_logger()


log = get_logger(__name__)
