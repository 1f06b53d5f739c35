import logging
import sys
from typing import TextIO

import structlog

shared_processors = [
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="%H:%M:%S"),
]

QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")


def configure_logging(level: str = "WARNING", stream: TextIO | None = None):
    """Route structlog output to `stream` (stderr by default) at `level`.

    Colors are only used when the stream is a terminal so `slab ask` output
    stays clean when piped.
    """
    stream = stream or sys.stderr
    renderer = structlog.dev.ConsoleRenderer(colors=stream.isatty())
    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper())),
        logger_factory=structlog.WriteLoggerFactory(file=stream),
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None):
    return structlog.get_logger(name or "slab")
