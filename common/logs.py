"""
Logging setup shared by every entry point.

Regular diagnostics go through the root logger (one module-level logger per
module). Lifecycle events that operators grep for are also written as one
JSON document per line on the dedicated ``media.events`` logger.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

EVENTS_LOGGER_NAME = "media.events"

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger and the JSON event logger. Idempotent."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )
    # botocore is very chatty at INFO
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)

    events = logging.getLogger(EVENTS_LOGGER_NAME)
    events.setLevel(logging.DEBUG)
    events.propagate = False  # Don't propagate to root logger
    if not events.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(message)s"))  # Raw JSON output
        events.addHandler(handler)


def _json_default(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def log_event(component: str, message: str, level: str = "info", **fields: Any) -> None:
    """
    Emit one structured lifecycle event.

    Args:
        component: Emitting component (e.g. "worker", "queue-monitor")
        message: Short event name, e.g. "job completed"
        level: Logging level name
        **fields: Extra context; None values are dropped
    """
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "component": component,
        "message": message,
    }
    entry.update({k: v for k, v in fields.items() if v is not None})

    logger = logging.getLogger(EVENTS_LOGGER_NAME)
    logger.log(
        getattr(logging, level.upper(), logging.INFO),
        json.dumps(entry, default=_json_default),
    )
