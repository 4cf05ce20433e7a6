"""Structured logging configuration with structlog."""

import logging

import structlog

from ttg.config import Settings

# Third-party loggers that flood INFO with per-statement / per-job lines.
_NOISY_LOGGERS = ("sqlalchemy.engine", "arq.worker", "asyncio")


def setup_logging(settings: Settings) -> None:
    """Configure structlog for the engine and its workers.

    JSON in deployed environments, the console renderer for local runs.
    Every structured event carries the environment name so worker and
    caller logs can share one sink.
    """
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if settings.log_format == "json" else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(environment=settings.environment)

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
