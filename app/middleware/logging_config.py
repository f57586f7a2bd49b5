"""
Structured logging configuration.

Services attach routing context to log records through ``extra=``
(tenant_id, organization_id, flow_id, step_id, user_id, ...). Both
formatters surface those fields:

- JSON:     one object per line, context fields as top-level keys
- Readable: colored line with a compact ``[t=1 flow=7 step=12]`` suffix

LOG_FORMAT / LOG_LEVEL come from app config (env vars of the same name).
When unset, production and non-debug runs use JSON at INFO, development
uses the readable format at DEBUG.
"""

import json
import logging
import sys
from datetime import datetime, timezone

# Request fields set by the timing middleware
REQUEST_FIELDS = ("method", "path", "status", "duration_ms", "remote_addr", "request_id")

# Routing context set by the services, with their short labels
CONTEXT_FIELDS = {
    "tenant_id": "t",
    "organization_id": "org",
    "flow_id": "flow",
    "step_id": "step",
    "user_id": "user",
    "event_type": "event",
    "job_name": "job",
}


def _context(record: logging.LogRecord) -> dict:
    return {
        key: getattr(record, key)
        for key in (*REQUEST_FIELDS, *CONTEXT_FIELDS)
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """JSON log formatter for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        tags = " ".join(
            f"{label}={getattr(record, key)}"
            for key, label in CONTEXT_FIELDS.items()
            if getattr(record, key, None) is not None
        )
        line = f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}"
        if tags:
            line += f" [{tags}]"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" ({duration:.0f}ms)"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger for the app."""
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = (app.config.get("LOG_LEVEL") or ("INFO" if is_prod else "DEBUG")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = (app.config.get("LOG_FORMAT") or ("json" if is_prod else "readable")).lower()
    formatter = JSONFormatter() if fmt == "json" else ReadableFormatter()

    root = logging.getLogger()
    # create_app runs once per test; replace rather than stack handlers
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine", "alembic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)
    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
