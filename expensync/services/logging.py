"""
Structured logging for Expensync.

Modules log through `logging.getLogger(__name__)`, which places them under
the `expensync` logger configured here. `LOG_LEVEL` sets verbosity and
`USE_JSON_LOGS=true` switches to one JSON object per line.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

PACKAGE_LOGGER = "expensync"


class JSONFormatter(logging.Formatter):
    """One JSON object per record; `extra_fields` are merged in."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        payload.update(getattr(record, "extra_fields", None) or {})
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: Optional[str] = None, json_logs: Optional[bool] = None) -> logging.Logger:
    """(Re)configure the package logger; safe to call more than once."""
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_logs is None:
        json_logs = os.getenv("USE_JSON_LOGS", "false").lower() == "true"

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(getattr(logging, level_name, logging.INFO))
    package_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if json_logs:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
    package_logger.addHandler(handler)
    package_logger.propagate = False
    return package_logger


logger = configure_logging()


def _emit(level: int, message: str, fields: Dict[str, Any], exception: Optional[BaseException] = None) -> None:
    logger.log(level, message, exc_info=exception, extra={"extra_fields": fields})


def log_request(
    method: str,
    path: str,
    status_code: int,
    duration_ms: float,
    user_id: Optional[str] = None,
    **kwargs,
) -> None:
    """One line per HTTP request; 5xx responses are logged as warnings."""
    fields: Dict[str, Any] = {
        "type": "http_request",
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round(duration_ms, 1),
    }
    if user_id:
        fields["user_id"] = user_id
    fields.update(kwargs)
    level = logging.WARNING if status_code >= 500 else logging.INFO
    _emit(level, f"{method} {path} {status_code} ({fields['duration_ms']}ms)", fields)


def log_error(
    error_type: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    exception: Optional[BaseException] = None,
) -> None:
    fields: Dict[str, Any] = {"type": "error", "error_type": error_type}
    fields.update(context or {})
    _emit(logging.ERROR, message, fields, exception)
