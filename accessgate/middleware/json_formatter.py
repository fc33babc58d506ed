"""Single-line JSON log formatter.

Enabled with ``STRUCTURED_LOGGING=true``; :func:`configure_structured_logging`
then routes the root logger through :class:`JSONFormatter`.

Every line carries ``timestamp``, ``level``, ``logger``, ``message`` and
``service``.  Purchase context is lifted out of ``extra=`` when present:

- ``correlation_id``: request or Stripe correlation id
- ``uid``: the identity uid the line concerns
- ``event_id`` / ``event_type``: the Stripe event being processed
- ``request``: the access-log payload from :class:`RequestLoggingMiddleware`

Warnings and errors also carry ``source`` (``module:lineno``); failures add
``exc_type`` and the formatted traceback as ``exc_info``.
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

from accessgate import __version__

SERVICE_NAME = "accessgate"

_CONTEXT_FIELDS: tuple[str, ...] = ("correlation_id", "uid", "event_id", "event_type", "request")


def _context(record: logging.LogRecord) -> dict[str, Any]:
    return {name: value for name in _CONTEXT_FIELDS if (value := getattr(record, name, None)) is not None}


class JSONFormatter(logging.Formatter):
    """Render log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": SERVICE_NAME,
            "version": __version__,
        }
        payload.update(_context(record))

        if record.levelno >= logging.WARNING:
            payload["source"] = f"{record.module}:{record.lineno}"

        exc_type = record.exc_info[0] if record.exc_info else None
        if exc_type is not None:
            payload["exc_type"] = exc_type.__name__
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_structured_logging(level: int = logging.INFO) -> None:
    """Replace root handlers with a single JSON ``StreamHandler``."""
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
