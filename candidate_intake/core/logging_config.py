"""
Logging setup for the ingestion service.

Everything logs to one console handler. Chatty third-party loggers are held
back so job lifecycle lines stay readable; ``debug`` lets SQL statements
through again.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any, Dict, Optional

from candidate_intake.core.config import Settings, settings

CONSOLE_HANDLER = "candidate_intake.console"

# Third-party loggers and the level they are held at outside debug mode.
QUIET_LOGGERS = {
    "sqlalchemy.engine": "WARNING",
    "uvicorn.access": "WARNING",
    "httpx": "WARNING",
    "httpcore": "WARNING",
    "anthropic": "WARNING",
    "multipart": "WARNING",
}


def build_logging_config(level: str = "INFO", debug: bool = False) -> Dict[str, Any]:
    """Return the ``dictConfig`` payload for the given level."""
    log_level = level.upper()
    loggers: Dict[str, Dict[str, Any]] = {
        "candidate_intake": {"level": log_level},
    }
    for name, quiet_level in QUIET_LOGGERS.items():
        loggers[name] = {"level": log_level if debug else quiet_level}
    if debug:
        loggers["sqlalchemy.engine"] = {"level": "INFO"}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            }
        },
        "handlers": {
            CONSOLE_HANDLER: {
                "class": "logging.StreamHandler",
                "formatter": "standard",
                "level": log_level,
            }
        },
        "loggers": loggers,
        "root": {
            "handlers": [CONSOLE_HANDLER],
            "level": log_level,
        },
    }


def is_configured() -> bool:
    return any(handler.get_name() == CONSOLE_HANDLER for handler in logging.getLogger().handlers)


def configure_logging(config: Optional[Settings] = None, *, force: bool = False) -> None:
    """
    Install the service's logging configuration once per process.

    Later calls are no-ops unless ``force`` is set, so importing the app
    repeatedly (tests, reloaders) does not stack handlers.
    """
    if is_configured() and not force:
        return
    config = config or settings
    dictConfig(build_logging_config(config.log_level, config.debug))
