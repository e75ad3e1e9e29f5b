"""
Structured key=value logging shared by the API and the job worker threads.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import UTC, datetime

# Request ID context for structured logging
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")

# Fields copied from `extra=` into the log line when present
EXTRA_FIELDS = [
    "job_id",
    "owner_id",
    "file_name",
    "processed_count",
    "job_status",
    "elapsed_ms",
    "attempt",
    "running_jobs",
    "max_upload_mb",
]

_configured = False


class StructuredFormatter(logging.Formatter):
    """Key=value structured logging formatter for readability on all consoles."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
        }

        req_id = request_id_ctx.get("")
        if req_id:
            log_data["request_id"] = req_id

        for field in EXTRA_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        parts = [f"{k}={json.dumps(v) if isinstance(v, str) else v}" for k, v in log_data.items()]
        return " ".join(parts)


def configure_logging(level: str = "INFO") -> None:
    """Install the structured handler on the root logger (idempotent)."""
    global _configured
    root = logging.getLogger()
    root.setLevel(getattr(logging, level))
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())
    root.addHandler(handler)
    _configured = True
