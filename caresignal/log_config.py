"""Structured logging setup shared by every pipeline component."""

import logging

import structlog

from caresignal.config import LoggingConfig


def configure_logging(config: LoggingConfig | None = None) -> None:
    """
    Configure structlog for JSON (production) or console (development) output.

    Components get their logger via ``structlog.get_logger(__name__)`` and bind
    ``component=...``; nothing else needs to know which renderer is active.
    """
    config = config or LoggingConfig()

    logging.basicConfig(format="%(message)s", level=getattr(logging, config.level))
    logging.getLogger().setLevel(getattr(logging, config.level))

    if config.format == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()  # type: ignore[assignment]

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
