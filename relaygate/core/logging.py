"""Logging configuration for Relaygate."""

import logging
import logging.config
import sys
from typing import Any

from relaygate.config.base import BaseSettings

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

FORMATTERS: dict[str, dict[str, str]] = {
    "default": {
        "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        "datefmt": DATE_FORMAT,
    },
    "detailed": {
        "format": "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s",
        "datefmt": DATE_FORMAT,
    },
    "json": {
        "format": (
            '{"time": "%(asctime)s", "logger": "%(name)s", '
            '"level": "%(levelname)s", "message": "%(message)s"}'
        ),
        "datefmt": "%Y-%m-%dT%H:%M:%S",
    },
}

# Third-party loggers that are chatty at INFO: relay polling and keep-alive
# pings go through httpx every few seconds per session.
QUIET_LOGGERS = {
    "httpx": "WARNING",
    "httpcore": "WARNING",
    "sqlalchemy.engine": "WARNING",
    "aiosqlite": "WARNING",
}


def pick_formatter(settings: BaseSettings) -> str:
    if settings.is_production:
        return "json"
    return "detailed" if settings.DEBUG else "default"


def _console_logger(level: str | int) -> dict[str, Any]:
    return {"level": level, "handlers": ["console"], "propagate": False}


def setup_logging(settings: BaseSettings) -> None:
    """Route every logger to stdout and log uncaught exceptions."""
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    loggers: dict[str, Any] = {
        "": _console_logger(log_level),
        "relaygate": _console_logger(log_level),
        "uvicorn": _console_logger("INFO"),
        "uvicorn.access": _console_logger("INFO" if settings.DEBUG else "WARNING"),
    }
    loggers.update({name: _console_logger(level) for name, level in QUIET_LOGGERS.items()})

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": FORMATTERS,
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "level": log_level,
                    "formatter": pick_formatter(settings),
                    "stream": sys.stdout,
                },
            },
            "loggers": loggers,
        }
    )

    def handle_exception(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return
        logging.getLogger("relaygate").critical(
            "Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback)
        )

    sys.excepthook = handle_exception
