"""Custom logging formatters.

Provides JSONFormatter for structured log output.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

# LogRecord attributes that are never copied into the context object
_RESERVED_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "worker_tag", "worker_id", "job_id"}


class JSONFormatter(logging.Formatter):
    """Format log records as one JSON object per line.

    Fields:
    - timestamp: ISO-8601 UTC time of the record
    - level, logger, message
    - worker_id / job_id: when set by WorkerContextFilter
    - context: values passed through ``extra=``
    - exception: formatted traceback, if any
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in ("worker_id", "job_id"):
            value = getattr(record, key, None)
            if value:
                entry[key] = value

        context = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }
        if context:
            entry["context"] = context

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)
