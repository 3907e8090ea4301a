"""Process-wide logging setup.

Log lines carry the browser session, task id, backend operation and elapsed
time when the caller passes them through ``extra=``; missing fields print as
``-`` so every line keeps the same shape.
"""

import logging
import os
from typing import Optional

CONTEXT_FIELDS = ("session", "task", "op", "elapsed_ms")

LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s "
    "session=%(session)s task=%(task)s op=%(op)s elapsed_ms=%(elapsed_ms)s "
    "%(message)s"
)

# Chatty transport libraries stay at WARNING unless DEBUG is requested
NOISY_LOGGERS = ("httpx", "httpcore", "websockets", "botocore", "urllib3")

_configured = False


class ContextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        for field in CONTEXT_FIELDS:
            if not hasattr(record, field):
                setattr(record, field, "-")
        return super().format(record)


def resolve_level(level: Optional[str] = None) -> int:
    name = (level or os.getenv("APP_LOG_LEVEL") or os.getenv("LOG_LEVEL") or "INFO").upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level: Optional[str] = None) -> None:
    global _configured
    if _configured:
        return

    resolved = resolve_level(level)
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(ContextFormatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(resolved)

    # uvicorn installs its own handlers; keep its level in step with ours
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(resolved)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(resolved if resolved <= logging.DEBUG else logging.WARNING)

    _configured = True
