"""Structured logging for aumos-integration-sync.

configure_logging() wires structlog into the stdlib logging module so that
library loggers (httpx, botocore, sqlalchemy) and service loggers share one
processor pipeline. Modules obtain loggers with get_logger(__name__) and log
short event names with keyword context:

    logger.info("Sync completed", integration_id=str(integration_id), duration_ms=812)
"""

import logging
import sys
from typing import Any

import structlog


def configure_logging(level: str = "info", json_output: bool = True) -> None:
    """Configure structlog and stdlib logging for the process.

    Safe to call more than once; later calls replace the handler and level.

    Args:
        level: Log level name (debug, info, warning, error, critical).
        json_output: Render JSON lines when True, coloured console output otherwise.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    renderer: Any = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)

    # botocore logs request bodies at debug
    logging.getLogger("botocore").setLevel(max(log_level, logging.INFO))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to the given module name.

    Args:
        name: Usually __name__ of the calling module.

    Returns:
        A structlog BoundLogger.
    """
    return structlog.get_logger(name)
