"""Logging setup with per-dispatch correlation.

Every record emitted while a dispatch is running carries that dispatch's
id, whichever module logged it (dispatcher, retry, rate limiter, stream
decoder). The id lives in a context variable bound by the dispatcher and
is stamped onto records by DispatchContextFilter, so library code keeps
using plain ``logging.getLogger(__name__)`` loggers.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from llm_relay.core.config import Settings

_dispatch_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("dispatch_id", default=None)

NO_DISPATCH = "-"

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(dispatch_id)s | %(message)s"


@contextmanager
def bind_dispatch_id(dispatch_id: str) -> Iterator[None]:
    """Tag every record logged inside the block with ``dispatch_id``.

    Must be entered and exited in the same task; async generators pass
    ``extra={"dispatch_id": ...}`` instead.
    """
    token = _dispatch_id.set(dispatch_id)
    try:
        yield
    finally:
        _dispatch_id.reset(token)


class DispatchContextFilter(logging.Filter):
    """Copies the bound dispatch id onto records that do not carry one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "dispatch_id", None) is None:
            record.dispatch_id = _dispatch_id.get() or NO_DISPATCH
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        dispatch_id = getattr(record, "dispatch_id", None)
        if dispatch_id and dispatch_id != NO_DISPATCH:
            log_data["dispatch_id"] = dispatch_id
        if record.exc_info and record.exc_info[1]:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


def setup_logging(settings: Settings | None = None) -> logging.Handler:
    """Install a single stdout handler on the root logger and return it.

    Library code never calls this; the embedding application does, once.
    """
    settings = settings or Settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    for existing in root.handlers[:]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(DispatchContextFilter())
    if settings.log_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    return handler
