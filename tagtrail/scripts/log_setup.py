"""Logger factory: one stderr handler per logger, text or JSON lines.

stdout is reserved for the JSON payloads printed by the CLI, so every record
goes to stderr. Level and format come from ``REGISTRY_LOG_LEVEL`` and
``REGISTRY_LOG_FORMAT`` (``text`` or ``json``).
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import UTC, datetime

DEFAULT_LEVEL = "WARNING"
ROOT_LOGGER_NAME = "tagtrail"


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


def _resolve_level(raw: str | None) -> int:
    name = str(raw or DEFAULT_LEVEL).strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.WARNING


def configure_root(*, level: str | None = None, fmt: str | None = None) -> logging.Logger:
    """Attach the stderr handler to the package root logger (idempotent)."""
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(_resolve_level(level or os.environ.get("REGISTRY_LOG_LEVEL")))
    if root.handlers:
        return root

    handler = logging.StreamHandler(sys.stderr)
    if str(fmt or os.environ.get("REGISTRY_LOG_FORMAT", "text")).strip().lower() == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "[%(asctime)s] [%(levelname)-8s] [%(name)s] %(message)s",
                datefmt="%H:%M:%S",
            )
        )
    root.addHandler(handler)
    root.propagate = False
    return root


def setup_logger(name: str) -> logging.Logger:
    """Return a child of the package logger, e.g. ``tagtrail.logs_engine``."""
    short = name.rsplit(".", 1)[-1]
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{short}")
