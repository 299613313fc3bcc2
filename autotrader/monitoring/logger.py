"""
Structured logging for the autotrader.

structlog renders both its own events and plain stdlib records (aiohttp,
asyncio) through one ProcessorFormatter, so the console and the log file
share a format. Scan and monitor cycles bind ``loop`` and ``cycle`` with
``cycle_context``; close tasks spawned inside a cycle inherit them.
"""
import logging
import sys
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator, Optional

import structlog

_HANDLER_PREFIX = "autotrader."

_SHARED_PROCESSORS = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
]


def _formatter(log_format: str) -> structlog.stdlib.ProcessorFormatter:
    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_SHARED_PROCESSORS,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None,
    **static_context: Any,
) -> None:
    """
    Configure structlog and the root logger.

    Args:
        log_level: DEBUG/INFO/WARNING/ERROR/CRITICAL
        log_format: "json" or "text" for the console; the file is always JSON
        log_file: Optional path, rotated at 10MB with 5 backups
        **static_context: Bound on every line, e.g. mode="paper"

    Calling it again replaces the handlers it installed before.
    """
    level = getattr(logging, log_level.upper())
    root = logging.getLogger()
    for handler in list(root.handlers):
        if (handler.get_name() or "").startswith(_HANDLER_PREFIX):
            root.removeHandler(handler)
            handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.set_name(_HANDLER_PREFIX + "console")
    console.setFormatter(_formatter(log_format))
    root.addHandler(console)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_path, maxBytes=10 * 1024 * 1024, backupCount=5)
        file_handler.set_name(_HANDLER_PREFIX + "file")
        file_handler.setFormatter(_formatter("json"))
        root.addHandler(file_handler)

    root.setLevel(level)
    # aiohttp access and client logs are noise below WARNING
    logging.getLogger("aiohttp").setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=_SHARED_PROCESSORS + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.clear_contextvars()
    if static_context:
        structlog.contextvars.bind_contextvars(**static_context)

    get_logger(__name__).info(
        "Logging initialized", log_level=log_level, log_format=log_format, log_file=log_file
    )


@contextmanager
def cycle_context(loop: str, cycle: int) -> Iterator[None]:
    """Bind loop name and cycle number for everything logged inside the block."""
    with structlog.contextvars.bound_contextvars(loop=loop, cycle=cycle):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
