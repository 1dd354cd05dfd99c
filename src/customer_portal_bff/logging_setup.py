# src/customer_portal_bff/logging_setup.py

import logging
from typing import Optional


class KeyValueFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)
        ts = self.formatTime(record, self.datefmt)
        kv = [f"time={ts}"] + [f"{k}={v}" for k, v in base.items()]
        return " ".join(kv)


def configure_logging(level: Optional[str] = None) -> None:
    if level is None:
        from .config import settings
        level = settings.LOG_LEVEL
    logging.basicConfig(level=level.upper(), format="%(message)s")
    root = logging.getLogger()
    for h in root.handlers:
        h.setFormatter(KeyValueFormatter())


def token_preview(token: Optional[str]) -> str:
    """Short, log-safe rendering of a bearer token."""
    if not token:
        return "<none>"
    return f"{token[:8]}..."
