"""Structured logging for the tunnel daemon.

The daemon's own status lines go to stdout through structlog. Relay and SSH
child processes never log through here: relays append to their own files
under ``log_dir`` and the SSH client inherits the daemon's stdout/stderr.
Values bound with ``session_context()`` (the SSH attempt number and target)
are merged into every line emitted while a session is running.
"""

import logging
import sys
from collections.abc import Mapping
from contextlib import AbstractContextManager
from typing import Any

import structlog
from structlog.typing import Processor

# asyncio reports selector and slow-callback chatter at DEBUG
QUIET_LOGGERS: Mapping[str, str] = {"asyncio": "WARNING"}

FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: str | None = None,
    module_levels: Mapping[str, str] | None = None,
) -> None:
    """Configure structured logging for the tunnel daemon.

    Safe to call more than once; each call replaces the previous handlers.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: If True, output one JSON object per line
        log_file: Optional file path to append logs to
        module_levels: Per-logger level overrides, ``QUIET_LOGGERS`` by default
    """
    log_level = getattr(logging, level.upper())

    root_logger = logging.getLogger()
    root_logger.handlers = []
    root_logger.setLevel(log_level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="a")
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        root_logger.addHandler(file_handler)

    overrides = QUIET_LOGGERS if module_levels is None else module_levels
    for name, module_level in overrides.items():
        logging.getLogger(name).setLevel(getattr(logging, module_level.upper()))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def session_context(**values: Any) -> AbstractContextManager[Any]:
    """Bind ``values`` to every log line emitted inside the ``with`` block.

    Tasks created inside the block inherit the binding.
    """
    return structlog.contextvars.bound_contextvars(**values)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]
