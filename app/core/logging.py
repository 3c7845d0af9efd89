"""Logging configuration: one JSON object per line on stdout."""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from app.core.config import settings
from app.middleware.request_id import get_request_id

# Structured extras copied onto the payload when passed via ``extra=``
_EXTRA_FIELDS = (
    "property_id",
    "meter_id",
    "unit_id",
    "utility_type",
    "tariff_id",
    "bill_id",
    "invoice_id",
    "duration_ms",
)


class JsonFormatter(logging.Formatter):
    """Render a record as JSON, tagged with the current request id."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.levelno >= logging.WARNING:
            payload["where"] = f"{record.module}:{record.lineno}"

        rid = get_request_id()
        if rid:
            payload["request_id"] = rid

        payload.update(
            (key, getattr(record, key)) for key in _EXTRA_FIELDS if hasattr(record, key)
        )

        if record.exc_info:
            payload["exc_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None
            payload["exc_info"] = self.formatException(record.exc_info)

        # Decimal amounts and dates fall back to str
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str | None = None) -> None:
    """Replace root handlers with a single JSON stdout handler."""
    level = (level or settings.LOG_LEVEL).upper()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    # uvicorn --reload imports the app again
    root.handlers[:] = [handler]
    root.setLevel(level)

    logging.getLogger("uvicorn.access").setLevel(level)
    logging.getLogger("sqlalchemy.engine").setLevel(settings.SQL_LOG_LEVEL.upper())
