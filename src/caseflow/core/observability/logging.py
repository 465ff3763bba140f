"""
Structured Logging

JSON log lines carrying the active trace/span ids plus whatever case context
callers pass through `extra=` (case_id, operation, actor, ...).
"""

import json
import logging
import sys
from datetime import datetime, timezone

from .tracing import get_span_id, get_trace_id

# LogRecord attributes that are not caller-supplied context
_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "trace_id"}


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(self, service_name: str = "caseflow-backend"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
            "trace_id": get_trace_id(),
            "span_id": get_span_id(),
        }

        for key, value in record.__dict__.items():
            if key in _STANDARD_ATTRS or key.startswith("_") or key in entry:
                continue
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                value = str(value)
            entry[key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry)


class TraceContextFilter(logging.Filter):
    """Expose the trace id to plain-text format strings."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "trace_id", None):
            record.trace_id = get_trace_id() or "-"
        return True


def configure_logging(level: str = "INFO", structured: bool = True, service_name: str = "caseflow-backend"):
    """
    Replace the root handlers with a single stdout handler.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        structured: JSON lines instead of plain text
        service_name: Stamped on every JSON line
    """
    numeric_level = getattr(logging, level.upper())
    root = logging.getLogger()
    root.setLevel(numeric_level)
    for existing in root.handlers[:]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.addFilter(TraceContextFilter())
    if structured:
        handler.setFormatter(StructuredFormatter(service_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [%(trace_id)s] %(message)s"
        ))
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "httpx", "opentelemetry"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging configured for {service_name} at {level}")
