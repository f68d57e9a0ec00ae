import structlog
import logging
import sys
from config import get_settings

NOISY_LOGGERS = ("httpx", "httpcore", "socketio", "engineio", "asyncio", "sqlalchemy.engine")


def configure_logger():
    settings = get_settings()
    level = logging.getLevelName(settings.LOG_LEVEL)
    if not isinstance(level, int):
        level = logging.INFO

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    # JSON for log shipping in production, readable console output elsewhere
    if settings.APP_ENV == "production":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    # The socket.io client logs every packet at INFO
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
