"""
Logging setup shared by the API server and the ``event-importer`` CLI.

Both entry points call ``configure_logging`` once at startup. Records go to
stdout in a single pipe-separated line format; chatty third-party loggers are
held at WARNING so per-batch import logs stay readable.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# SQL echo and per-request HTTP lines drown out import progress.
QUIET_LOGGERS = ("sqlalchemy.engine", "urllib3", "uvicorn.access")

_is_configured = False


def build_logging_config(level: Optional[str] = None) -> Dict[str, Any]:
    """Return the ``dictConfig`` payload for ``level`` (defaults to INFO)."""
    log_level = (level or "INFO").upper()

    loggers: Dict[str, Any] = {
        "event_importer": {"level": log_level, "propagate": True},
    }
    for name in QUIET_LOGGERS:
        loggers[name] = {"level": "WARNING", "propagate": True}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "pipe": {"format": LOG_FORMAT, "datefmt": LOG_DATE_FORMAT},
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
                "formatter": "pipe",
                "level": log_level,
            }
        },
        "loggers": loggers,
        "root": {"handlers": ["stdout"], "level": log_level},
    }


def configure_logging(level: Optional[str] = None, *, force: bool = False) -> None:
    """
    Install the shared logging configuration.

    Later calls are ignored unless ``force`` is set, which lets the CLI apply
    a ``--log-level`` override after the server module configured defaults.
    """
    global _is_configured

    if _is_configured and not force:
        return

    dictConfig(build_logging_config(level))
    _is_configured = True
    logging.getLogger(__name__).debug("Logging configured at %s", (level or "INFO").upper())
