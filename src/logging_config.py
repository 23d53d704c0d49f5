"""Logging setup shared by the API process and the storage layer.

Modules pass structured context through ``extra={...}``; the formatter here
appends those fields to each line so they survive into plain-text output.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone as dt_timezone
from logging.config import dictConfig
from typing import Optional
from zoneinfo import ZoneInfo


DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"
QUIET_LIBRARIES = ("urllib3", "google.auth")

_STANDARD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime", "taskName"}


class _ContextFormatter(logging.Formatter):
    """Timezone-aware formatter that renders ``extra`` fields as ``key=value`` pairs."""

    def __init__(self, fmt: str, datefmt: Optional[str] = None, timezone: Optional[str] = None):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.tzinfo = ZoneInfo(timezone) if timezone else None

    def format(self, record):
        line = super().format(record)
        context = {
            key: value
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRIBUTES and not key.startswith("_")
        }
        if not context:
            return line
        rendered = " ".join(f"{key}={value!r}" for key, value in sorted(context.items()))
        return f"{line} | {rendered}"

    def formatTime(self, record, datefmt=None):  # noqa: N802 - override signature
        dt = self._to_datetime(record.created, self.tzinfo)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat()

    @staticmethod
    def _to_datetime(timestamp, tzinfo):
        base_dt = datetime.fromtimestamp(timestamp, tz=dt_timezone.utc)
        return base_dt.astimezone(tzinfo) if tzinfo else base_dt


def configure_logging(log_level: str = "INFO", timezone: Optional[str] = None) -> None:
    """Configure console logging for the API server and scripts.

    Safe to call repeatedly: handlers are replaced rather than stacked. HTTP
    client libraries are held at WARNING so per-request connection chatter does
    not drown out the storage layer's own records.
    """

    normalized_level = getattr(logging, log_level.upper(), logging.INFO)
    formatter_factory = {
        "()": _ContextFormatter,
        "fmt": DEFAULT_FORMAT,
        "datefmt": DEFAULT_DATE_FORMAT,
    }
    if timezone:
        formatter_factory["timezone"] = timezone

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"standard": formatter_factory},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "level": normalized_level,
                    "stream": "ext://sys.stdout",
                }
            },
            "loggers": {name: {"level": "WARNING"} for name in QUIET_LIBRARIES},
            "root": {
                "handlers": ["console"],
                "level": normalized_level,
            },
        }
    )

    logging.captureWarnings(True)
