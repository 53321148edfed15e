"""Package logger with an in-memory buffer the API can serve."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from typing import Deque

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger("project_autopilot")

# Circular buffer of recent log entries (max 100)
log_buffer: Deque[dict] = deque(maxlen=100)


class LogBufferHandler(logging.Handler):
    """Captures log records into a circular buffer."""

    def __init__(self, buffer: Deque[dict] | None = None):
        super().__init__()
        self.buffer = log_buffer if buffer is None else buffer

    def emit(self, record: logging.LogRecord):
        try:
            self.buffer.append({
                "timestamp": datetime.fromtimestamp(record.created).strftime("%H:%M:%S"),
                "level": record.levelname,
                "logger": record.name,
                "message": self.format(record),
            })
        except Exception:
            self.handleError(record)


def configure_logging(level: str | int = logging.INFO, console: bool = True) -> logging.Logger:
    """Attach the buffer handler (and optionally a console handler) once."""
    logger.setLevel(level)

    if not any(h.get_name() == "autopilot:buffer" for h in logger.handlers):
        buffer_handler = LogBufferHandler()
        buffer_handler.setLevel(logging.DEBUG)
        buffer_handler.setFormatter(logging.Formatter("%(message)s"))
        buffer_handler.set_name("autopilot:buffer")
        logger.addHandler(buffer_handler)

    if console and not any(h.get_name() == "autopilot:console" for h in logger.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        console_handler.set_name("autopilot:console")
        logger.addHandler(console_handler)

    return logger


def recent_logs(limit: int = 50) -> list[dict]:
    limit = max(0, min(limit, log_buffer.maxlen))
    if limit == 0:
        return []
    return list(log_buffer)[-limit:]
