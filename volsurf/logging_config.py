"""Structured logging configuration for the vol surface pipeline.

Uses structlog with context variables, ISO timestamps, and console rendering.
Provides get_logger() for named loggers and configure_logging() for one-time
setup.
"""

import logging

import structlog

from . import config

_configured = False


def configure_logging(level: str = None, force: bool = False) -> None:
    """
    Configure structlog processors once.

    Safe to call multiple times: only the first invocation takes effect
    unless ``force`` is set.

    Parameters
    ----------
    level : minimum level name ("DEBUG", "INFO", ...), default config.LOG_LEVEL
    force : reconfigure even if already configured
    """
    global _configured
    if _configured and not force:
        return

    level_name = (level or config.LOG_LEVEL).upper()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level_name)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str) -> structlog.BoundLogger:
    """Bound logger named ``name`` (usually the module's __name__); configures logging on first use."""
    configure_logging()
    return structlog.get_logger(logger_name=name)
