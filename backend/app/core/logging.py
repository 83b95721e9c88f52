import logging
import os
from logging.config import dictConfig
from typing import Any

# Snapshot folds and stream re-opens are chatty at DEBUG.
ACTIVITY_LOGGERS = (
    "app.services.aggregator",
    "app.services.category_subscriber",
)

QUIET_LOGGERS = {
    "sqlalchemy.engine": "WARNING",
    "aiosqlite": "WARNING",
    "asyncio": "WARNING",
}


def _build_config(log_level: str, activity_level: str) -> dict[str, Any]:
    loggers: dict[str, Any] = {
        "uvicorn": {"handlers": ["console"], "level": log_level},
        "uvicorn.error": {"level": log_level, "propagate": True},
        "uvicorn.access": {"handlers": ["console"], "level": log_level, "propagate": False},
    }
    for name in ACTIVITY_LOGGERS:
        loggers[name] = {"level": activity_level}
    for name, level in QUIET_LOGGERS.items():
        loggers[name] = {"level": level}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
                "datefmt": "%Y-%m-%dT%H:%M:%S%z",
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "level": log_level,
            }
        },
        "loggers": loggers,
        "root": {"handlers": ["console"], "level": log_level},
    }


def configure_logging(level: str | None = None) -> None:
    """
    Console logging for the service.

    ``LOG_LEVEL`` sets the global level. ``ACTIVITY_LOG_LEVEL`` tunes the
    aggregator and subscriber loggers on their own.
    """
    log_level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    activity_level = os.environ.get("ACTIVITY_LOG_LEVEL", log_level).upper()
    dictConfig(_build_config(log_level, activity_level))
    logging.getLogger(__name__).debug(
        "Logging configured", extra={"level": log_level, "activity_level": activity_level}
    )


__all__ = ["configure_logging"]
