"""JSON-lines diagnostics for the krun_launch loggers.

Several invocations usually race for the lock from the same terminal, so every
line carries the emitting pid next to the election/forwarding keys that
``launch.py`` attaches through ``extra=``.
"""
from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, TextIO

LOG_LEVEL_VAR = "KRUN_LOG_LEVEL"
PACKAGE_LOGGER = "krun_launch"

# Attached by launch.py; ints stay ints in the output.
CORRELATION_KEYS = ("op", "port", "lock_path", "attempt")


class JsonlFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "pid": record.process,
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in CORRELATION_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value if isinstance(value, (int, str)) else str(value)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def level_from_env(environ: Optional[Mapping[str, str]] = None, default: int = logging.WARNING) -> int:
    """``KRUN_LOG_LEVEL`` as a logging level; unknown names fall back to ``default``."""
    env = os.environ if environ is None else environ
    name = str(env.get(LOG_LEVEL_VAR, "") or "").strip().upper()
    value = logging.getLevelName(name) if name else default
    return value if isinstance(value, int) else default


def setup_logging(level: int = logging.WARNING, stream: Optional[TextIO] = None) -> logging.Handler:
    """Send krun_launch records to ``stream`` (stderr) as JSON lines.

    Only the package logger is touched. Calling again replaces the handler
    installed by the previous call.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    for h in list(logger.handlers):
        if isinstance(h.formatter, JsonlFormatter):
            logger.removeHandler(h)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonlFormatter())
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return handler
