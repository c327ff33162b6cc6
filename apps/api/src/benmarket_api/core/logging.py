from __future__ import annotations

import json
import logging
import sys
from logging import LogRecord
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace


_STDLIB_RECORD_ATTRS = frozenset(
    vars(logging.makeLogRecord({})).keys() | {"message", "asctime", "taskName"}
)

_QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "celery.redirected": logging.WARNING,
}


class InterceptHandler(logging.Handler):
    """Route stdlib logging (uvicorn, sqlalchemy, celery) through Loguru."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STDLIB_RECORD_ATTRS
        }
        extra.setdefault("stdlib_logger", record.name)

        message = record.getMessage().replace("{", "{{").replace("}", "}}")
        logger.bind(**extra).opt(depth=6, exception=record.exc_info).log(level, message)


def _render_json(message: "logger.Message", metadata: Dict[str, Any]) -> None:
    record = message.record
    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["name"],
        **metadata,
    }

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        payload["trace_id"] = f"{span_context.trace_id:032x}"
        payload["span_id"] = f"{span_context.span_id:016x}"

    if record["exception"] is not None:
        payload["exception"] = repr(record["exception"].value)

    payload.update(record["extra"])
    sys.stdout.write(json.dumps(payload, default=str) + "\n")


def configure_logging(*, service_name: str, environment: str, version: str, level: str = "INFO") -> None:
    """Install the JSON Loguru sink and bridge stdlib logging into it."""

    logger.remove()
    metadata = {"service": service_name, "environment": environment, "version": version}
    logger.add(lambda message: _render_json(message, metadata), level=level, backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)
