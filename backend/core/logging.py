import logging
from logging.config import dictConfig
from typing import Literal

LogLevel = Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"]

JSON_FORMATTER_CLASS = "pythonjsonlogger.json.JsonFormatter"


def configure_logging(level: LogLevel = "INFO", json_logs: bool = True) -> None:
    """Configure structured logging across the app.

    Scheduler sweeps and notification fan-out log with ``extra`` fields
    (project_id, room, event) which the JSON formatter emits as keys.
    """
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                },
                "json": {
                    "()": JSON_FORMATTER_CLASS,
                    "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                },
            },
            "filters": {
                "request_id": {"()": "backend.core.request_context.RequestIdFilter"},
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "filters": ["request_id"],
                    "formatter": "json" if json_logs else "default",
                }
            },
            "root": {"handlers": ["console"], "level": level.upper()},
            "loggers": {
                "apscheduler": {"level": "WARNING"},
            },
        }
    )

    logging.getLogger("uvicorn").handlers = []
    logging.getLogger("uvicorn.error").handlers = []
    logging.getLogger("uvicorn.access").handlers = []
