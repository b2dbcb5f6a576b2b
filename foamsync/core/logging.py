"""structlog setup shared by the API, the worker and the CLI.

Module loggers stay plain ``logging.getLogger(__name__)``; their records
are rendered by the same structlog processor chain as structlog loggers,
so request ids bound in the web middleware show up on both.
"""

import logging
import sys
from pathlib import Path
from typing import Any

import structlog

from foamsync.config import AppConfig, get_config

# Libraries that log every connection or statement at INFO
NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore", "arq.worker", "aiosqlite")


def build_processors(json_logs: bool) -> tuple[list[Any], Any]:
    """Shared pre-chain and the final renderer for the chosen format."""
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if json_logs:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()
    return shared_processors, renderer


def configure_logging(config: AppConfig | None = None, log_file: Path | None = None) -> None:
    """Configure structured logging for the application.

    Args:
        config: Source of log level and format; defaults to get_config()
        log_file: Optional extra file destination (parent must exist)
    """
    config = config or get_config()
    shared_processors, renderer = build_processors(config.log_format == "json")

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file is not None and log_file.parent.exists():
        handlers.append(logging.FileHandler(log_file))

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(config.log_level.upper())

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
