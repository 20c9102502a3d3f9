"""Structured logging for the schedule engine.

JSON lines in production, a console renderer in development or when
``LOG_FORMAT=text``. Logs go to stderr: the worker CLI writes the event
stream to stdout.
"""

import logging
import sys
from contextlib import contextmanager
from typing import IO, Iterator, Optional

import structlog
from app.config import get_settings

_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def setup_logging(level: Optional[str] = None, stream: Optional[IO[str]] = None) -> None:
    """Configure structlog and route stdlib logging through it.

    Args:
        level: Overrides ``settings.LOG_LEVEL``
        stream: Overrides stderr (tests pass a StringIO)
    """
    settings = get_settings()
    shared = _shared_processors()

    if settings.is_development or settings.LOG_FORMAT == "text":
        renderer = structlog.dev.ConsoleRenderer(colors=stream is None and sys.stderr.isatty())
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=shared,
    ))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))

    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.SQLALCHEMY_ECHO else logging.WARNING)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def log_context(**values) -> Iterator[None]:
    """Bind ``values`` to every log line emitted inside the block.

    Tasks created inside the block inherit the binding.
    """
    structlog.contextvars.bind_contextvars(**values)
    try:
        yield
    finally:
        structlog.contextvars.unbind_contextvars(*values)
