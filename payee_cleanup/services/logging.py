"""
Structured logging for the payee cleanup engine.

Module loggers (``payee_cleanup.services.*``) propagate to the
``payee_cleanup`` logger configured here. Cleanup outcomes and errors are
emitted as records carrying ``extra_fields`` so the JSON formatter can
ship them as flat key/value events.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
USE_JSON_LOGS = os.getenv("USE_JSON_LOGS", "false").lower() == "true"

logger = logging.getLogger("payee_cleanup")


class JSONFormatter(logging.Formatter):
    """One JSON object per line; extra_fields are merged at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            event["exception"] = self.formatException(record.exc_info)
        extra_fields = getattr(record, "extra_fields", None)
        if extra_fields:
            event.update(extra_fields)
        # Rule and application ids, datetimes and enums are not JSON-native.
        return json.dumps(event, default=str)


def configure_logging(level: Optional[str] = None, json_logs: Optional[bool] = None) -> logging.Logger:
    """(Re)attach the console handler to the package logger."""
    level_name = (level or LOG_LEVEL).upper()
    use_json = USE_JSON_LOGS if json_logs is None else json_logs

    handler = logging.StreamHandler(sys.stdout)
    if use_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    handler.setLevel(getattr(logging, level_name, logging.INFO))

    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    return logger


configure_logging()


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


def log_cleanup(
    original: str,
    cleaned: str,
    source: str,
    transaction_id: str,
    rule_id: Optional[str] = None,
    **kwargs: Any,
) -> None:
    """Log one cleanup outcome; ``source`` is "rule" or "llm"."""
    extra_fields = {
        "type": "payee_cleanup",
        "source": source,
        "original_payee": original,
        "cleaned_payee": cleaned,
        "transaction_id": transaction_id,
    }
    if rule_id:
        extra_fields["rule_id"] = rule_id
    extra_fields.update(kwargs)
    if logger.isEnabledFor(logging.INFO):
        _emit(logging.INFO, f"{source}: {original!r} -> {cleaned!r}", extra_fields)


def log_error(
    error_type: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    exception: Optional[BaseException] = None,
) -> None:
    """Log error with context."""
    extra_fields = {
        "type": "error",
        "error_type": error_type,
    }
    if context:
        extra_fields.update(context)

    if exception is not None:
        logger.error(
            message,
            exc_info=(type(exception), exception, exception.__traceback__),
            extra={"extra_fields": extra_fields},
        )
    else:
        _emit(logging.ERROR, message, extra_fields)
