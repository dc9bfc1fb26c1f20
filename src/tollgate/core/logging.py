import logging
import sys

import structlog

from tollgate.config import get_settings


def setup_logging(level: str | None = None) -> None:
    """
    Configure structlog to emit JSON lines at `level` and above.

    `level` defaults to the `log_level` setting (TOLLGATE_LOG_LEVEL).

    Library code only calls `structlog.get_logger()`; the host
    application calls this once at startup.
    """
    if level is None:
        level = get_settings().log_level
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        raise ValueError(f"Unknown log level: {level}")

    # Common processors for all logs (timestamp, level, etc)
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    structlog.configure(
        processors=shared_processors + [
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )
