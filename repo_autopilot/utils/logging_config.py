"""
Structured logging setup.

Log lines are JSON by default so they can be shipped as-is; ``console``
renders the same events for a terminal. Every line emitted while an event is
being handled carries the ``delivery_id`` and ``event_type`` the orchestrator
binds through ``structlog.contextvars``.
"""

import structlog

LOG_FORMATS = ("json", "console")


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structlog for the process.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: ``json`` or ``console``

    Raises:
        ValueError: If the format is not one of ``LOG_FORMATS``
    """
    if log_format not in LOG_FORMATS:
        raise ValueError(f"Unknown log format {log_format!r}, expected one of {', '.join(LOG_FORMATS)}")

    renderer = structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level.upper()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
