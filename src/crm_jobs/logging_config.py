"""Process-wide logging setup for the CLI and trigger hosts.

Logs go to stderr so command output on stdout stays machine-readable.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from crm_jobs.config import LoggingSettings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_EXTRA_FIELDS: tuple[str, ...] = (
    "job_id",
    "kind",
    "owner_id",
    "outcome",
    "duration_ms",
    "attempts",
    "error",
    "service",
    "runner_id",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        # Structured fields passed via logger.*(..., extra={...})
        for key in _EXTRA_FIELDS:
            if hasattr(record, key):
                payload[key] = getattr(record, key)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(settings: LoggingSettings, *, force: bool = False) -> None:
    """Install one stderr handler on the root logger.

    Leaves an already configured root logger alone unless ``force`` is set,
    so embedding hosts and test harnesses keep their own handlers.
    """

    root = logging.getLogger()
    if root.handlers and not force:
        return

    handler = logging.StreamHandler(sys.stderr)
    if settings.format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.setLevel(logging.getLevelName(settings.level.upper()))
    root.handlers.clear()
    root.addHandler(handler)
