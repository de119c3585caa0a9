"""Logging setup for stackvault invocations.

Two modes are supported:

- **Text** (default): ``logging.basicConfig``-style lines on stderr.
- **Structured**: one JSON object per line on stderr, for log shippers that
  index fields without regex parsing.  Enable with
  ``STACKVAULT_STRUCTURED_LOGGING=true``, or by calling
  :func:`configure_logging` with ``structured=True``.

Output schema per structured line::

    {
        "timestamp": "2025-05-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "vault_engine.restore",
        "message": "Restore of 20250515_123000 verified",
        "snapshot": "20250515_123000",  // present only when logged with extra
        "exc_info": "Traceback ..."  // present only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import sys
import traceback
from datetime import UTC, datetime
from typing import Any

_TEXT_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Structured context passed through ``extra={"snapshot": ...}``.
        snapshot = getattr(record, "snapshot", None)
        if snapshot is not None:
            payload["snapshot"] = snapshot

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging(level: int = logging.WARNING, *, structured: bool = False) -> logging.Handler:
    """Replace the root logger's handlers with a single stderr handler.

    Returns the installed handler so callers (and tests) can inspect it.
    """
    handler = logging.StreamHandler(sys.stderr)
    if structured:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    return handler
