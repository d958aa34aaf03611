"""
Structured logging for JobLedger.

Everything logs under the ``jobledger`` logger. Set USE_JSON_LOGS=true to get
one JSON object per line; ``extra_fields`` on a record are merged into it.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger("jobledger")


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.pathname:
            log_data["module"] = record.module
            log_data["line"] = record.lineno

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


def configure_logging(level: Optional[str] = None, use_json: Optional[bool] = None) -> logging.Logger:
    """Attach a single stdout handler to the package logger. Safe to call twice."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if use_json is None:
        use_json = os.getenv("USE_JSON_LOGS", "false").lower() == "true"

    handler = logging.StreamHandler(sys.stdout)
    if use_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))

    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level, logging.INFO))
    logger.propagate = False
    return logger


configure_logging()


def _emit(level: int, message: str, extra_fields: Dict[str, Any]) -> None:
    record = logger.makeRecord(logger.name, level, "", 0, message, (), None)
    record.extra_fields = extra_fields
    logger.handle(record)


def log_request(method: str, path: str, status_code: int, duration_ms: float, user: Optional[str] = None):
    """One line per HTTP request; ``user`` comes from the X-User header."""
    extra_fields = {
        "type": "http_request",
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round(duration_ms, 1),
    }
    if user:
        extra_fields["user"] = user
    _emit(logging.INFO, f"{method} {path} {status_code}", extra_fields)


def log_error(error_type: str, message: str, context: Optional[Dict[str, Any]] = None):
    extra_fields = {"type": "error", "error_type": error_type}
    if context:
        extra_fields.update(context)
    _emit(logging.ERROR, message, extra_fields)


def log_correction(job_id: str, entity: str, entity_id: str, field: str, stored: Any, derived: Any):
    """Log a reconciliation write (before/after)."""
    _emit(
        logging.WARNING,
        f"Reconciliation corrected {entity} {entity_id}.{field}: {stored} -> {derived}",
        {
            "type": "reconciliation_correction",
            "job_id": job_id,
            "entity": entity,
            "entity_id": entity_id,
            "field": field,
            "stored": str(stored),
            "derived": str(derived),
        },
    )
