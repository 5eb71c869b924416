"""Logging setup for the plugin.

The container runtime reads the CNI result from stdout, so all log output
goes to stderr. Two formats are supported: a human-readable text format and
a JSON format for log shippers.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from podnet.config import settings

SERVICE_NAME = "podnet"

# Attributes present on every LogRecord; anything else came in via `extra`.
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class PodnetJSONFormatter(logging.Formatter):
    """Format records as single-line JSON objects."""

    def __init__(self, node: str | None = None):
        super().__init__()
        self.node = node or ""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": SERVICE_NAME,
            "node": getattr(record, "node", None) or self.node,
        }
        extra = _extra_fields(record)
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PodnetTextFormatter(logging.Formatter):
    """Human-readable format with node and workload context."""

    def __init__(self, node: str | None = None):
        super().__init__(
            fmt="%(asctime)s %(levelname)s [%(node)s] %(name)s: %(message)s%(context)s"
        )
        self.node = node or "-"

    def format(self, record: logging.LogRecord) -> str:
        record.node = getattr(record, "node", None) or self.node
        extra = {k: v for k, v in _extra_fields(record).items() if k not in ("node", "context")}
        record.context = "".join(f" {k}={v}" for k, v in sorted(extra.items()))
        return super().format(record)


def setup_logging(level: str | None = None, node: str | None = None) -> None:
    """Configure the root logger with a single stderr handler.

    Args:
        level: Log level name; falls back to settings.log_level
        node: Node name stamped on every record
    """
    level_name = (level or settings.log_level or "INFO").upper()
    if settings.log_format == "json":
        formatter: logging.Formatter = PodnetJSONFormatter(node=node)
    else:
        formatter = PodnetTextFormatter(node=node)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level_name, logging.INFO))


def workload_logger(workload: str, **fields: Any) -> logging.LoggerAdapter:
    """Return a logger that stamps every record with the workload identity."""
    return logging.LoggerAdapter(
        logging.getLogger("podnet.attach"),
        {"workload": workload, **fields},
    )
