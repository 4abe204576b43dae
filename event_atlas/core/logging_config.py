"""
Logging setup for the Event Atlas API and worker processes.

Both processes write to the same stream in production, so every line names
the process role and pid next to the logger. Pipeline modules live under
``event_atlas``. HTTP and S3 client loggers are noisy at DEBUG and always
stay at WARNING; SQL statements are logged only with ``log_sql``.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any, Dict, Optional

from event_atlas.core.config import settings

APP_LOGGER = "event_atlas"
LINE_FORMAT = "%(asctime)s | %(levelname)-7s | {role}[%(process)d] | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

# Third-party loggers kept quiet regardless of the application level.
QUIET_LOGGERS = ("urllib3", "botocore", "boto3", "s3transfer", "uvicorn.access")

_configured_role: Optional[str] = None


def build_logging_config(level: str, role: str, log_sql: bool = False) -> Dict[str, Any]:
    """The ``dictConfig`` payload for one process role ("api" or "worker")."""
    loggers: Dict[str, Any] = {name: {"level": "WARNING"} for name in QUIET_LOGGERS}
    loggers[APP_LOGGER] = {"level": level}
    loggers["sqlalchemy.engine"] = {"level": "INFO" if log_sql else "WARNING"}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "event_atlas": {
                "format": LINE_FORMAT.format(role=role),
                "datefmt": DATE_FORMAT,
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "event_atlas",
                "level": level,
            }
        },
        "root": {"handlers": ["console"], "level": level},
        "loggers": loggers,
    }


def configure_logging(level: Optional[str] = None, role: str = "api", force: bool = False) -> None:
    """
    Configure logging once per process.

    A second call is a no-op unless ``force`` is set, so importing the API
    app from the worker does not replace the worker's configuration.
    """
    global _configured_role

    if _configured_role is not None and not force:
        return

    log_level = (level or settings.log_level or "INFO").upper()
    dictConfig(build_logging_config(log_level, role, settings.log_sql))
    _configured_role = role
    logging.getLogger(APP_LOGGER).debug("Logging configured for %s at %s", role, log_level)
