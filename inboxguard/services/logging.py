"""
Structured logging for InboxGuard.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Log level from environment
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logger = logging.getLogger("inboxguard")
logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
logger.handlers.clear()

console_handler = logging.StreamHandler(sys.stdout)
console_handler.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


USE_JSON_LOGS = os.getenv("USE_JSON_LOGS", "false").lower() == "true"

if USE_JSON_LOGS:
    formatter = JSONFormatter()
else:
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

console_handler.setFormatter(formatter)
logger.addHandler(console_handler)
logger.propagate = False


def _emit(level: int, message: str, extra_fields: Dict[str, Any]) -> None:
    record = logging.LogRecord(
        name=logger.name,
        level=level,
        pathname="",
        lineno=0,
        msg=message,
        args=(),
        exc_info=None,
    )
    record.extra_fields = extra_fields
    logger.handle(record)


def log_request(
    method: str,
    path: str,
    status_code: int,
    duration_ms: float,
    tenant_id: Optional[str] = None,
    **kwargs
):
    """Log HTTP request."""
    extra_fields = {
        "type": "http_request",
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
    }
    if tenant_id:
        extra_fields["tenant_id"] = tenant_id
    extra_fields.update(kwargs)
    _emit(logging.INFO, f"{method} {path} {status_code}", extra_fields)


def log_sync_event(
    tenant_id: str,
    channel: str,
    outcome: str,
    backoff_ms: int,
    error: Optional[str] = None,
    **kwargs
):
    """Log one scheduler tick outcome (success / failure / skipped)."""
    extra_fields = {
        "type": "sync",
        "tenant_id": tenant_id,
        "channel": channel,
        "outcome": outcome,
        "backoff_ms": backoff_ms,
    }
    if error:
        extra_fields["error"] = error
    extra_fields.update(kwargs)

    level = logging.WARNING if outcome == "failure" else logging.INFO
    _emit(level, f"sync {channel} {tenant_id} {outcome}", extra_fields)


def log_action(
    tenant_id: str,
    item_id: str,
    action: str,
    from_state: str,
    to_state: str,
    automated: bool = False,
    **kwargs
):
    """Log an applied lifecycle transition."""
    extra_fields = {
        "type": "action",
        "tenant_id": tenant_id,
        "item_id": item_id,
        "action": action,
        "from_state": from_state,
        "to_state": to_state,
        "automated": automated,
    }
    extra_fields.update(kwargs)
    _emit(logging.INFO, f"{action} {item_id}: {from_state} -> {to_state}", extra_fields)


def log_error(
    error_type: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    exception: Optional[Exception] = None
):
    """Log error with context."""
    extra_fields = {
        "type": "error",
        "error_type": error_type,
    }
    if context:
        extra_fields.update(context)

    if exception:
        logger.error(message, exc_info=exception, extra={"extra_fields": extra_fields})
    else:
        _emit(logging.ERROR, message, extra_fields)
