"""structlog setup for processes embedding the risk engine."""

import logging

import structlog


def configure_logging(level: str = "INFO", json: bool = False) -> None:
    """Set up structlog with console output, or JSON lines when ``json`` is set.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        json: Render events as JSON instead of the human-readable console format
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
