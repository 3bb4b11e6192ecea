import logging
import sys

import structlog
from pythonjsonlogger import jsonlogger

from ..config import get_settings


def setup_logging():
    """Structured logging setup"""
    settings = get_settings()

    # JSON formatter for the stdlib root handler
    json_formatter = jsonlogger.JsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s"
    )

    renderer = structlog.processors.JSONRenderer() if settings.log_json else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logger = logging.getLogger()
    if not any(getattr(h, "_carecenter", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(json_formatter)
        handler._carecenter = True
        logger.addHandler(handler)
    logger.setLevel(settings.log_level.upper())

    # Keep the SQL engine quiet unless explicitly asked for
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return structlog.get_logger()
