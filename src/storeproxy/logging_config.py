"""Logging setup for storeproxy.

Every record is stamped with the id of the request being served, taken from
``request_id_var``. The HTTP middleware sets that variable, so log lines
written deep in the storage layer (a failed part upload, an aborted
multipart session) can be tied back to the response carrying the same
``x-request-id``.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone

NO_REQUEST = "-"

request_id_var: ContextVar[str] = ContextVar("storeproxy_request_id", default=NO_REQUEST)

# Request attributes the HTTP middleware attaches via ``extra=``.
_EXTRA_FIELDS = ("method", "path", "status", "duration_ms")

# Client libraries that log every signed request at DEBUG.
_CHATTY_LOGGERS = ("botocore", "aiobotocore", "urllib3")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s"


class RequestIdFilter(logging.Filter):
    """Copies the current request id onto records that lack one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_var.get()
        return True


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None)
        if request_id and request_id != NO_REQUEST:
            entry["request_id"] = request_id
        for key in _EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Install a single stderr handler on the root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        fmt: 'text' for human-readable lines, 'json' for one object per line.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric_level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(numeric_level)
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(JSONFormatter() if fmt == "json" else logging.Formatter(TEXT_FORMAT))
    root.addHandler(handler)

    # Storage client chatter stays at WARNING unless explicitly debugging.
    client_level = logging.DEBUG if numeric_level <= logging.DEBUG else logging.WARNING
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(client_level)
