import logging

import structlog

from ticketpay.config import get_str

# Reduce SQLAlchemy logging noise - show errors but not all SQL
logging.getLogger("sqlalchemy.engine").setLevel(logging.ERROR)
logging.getLogger("sqlalchemy.pool").setLevel(logging.ERROR)


def configure_logging() -> None:
    level = getattr(logging, get_str("LOG_LEVEL", "INFO").upper(), logging.INFO)
    renderer = (
        structlog.processors.JSONRenderer()
        if get_str("LOG_JSON", "false").lower() in ("1", "true", "yes")
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def truncate(payload, limit: int = 500) -> str:
    """Shorten a provider payload for log lines."""
    text = payload if isinstance(payload, str) else repr(payload)
    return text if len(text) <= limit else text[:limit] + "..."
