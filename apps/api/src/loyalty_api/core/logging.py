"""JSON log output for the loyalty service.

Every line written to stdout is one JSON object carrying the service
identity, the active OpenTelemetry trace/span ids and whatever fields the
call site bound with ``logger.bind`` or passed as keyword arguments.
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import asdict, dataclass
from logging import LogRecord
from typing import Any, Dict, TextIO

from loguru import logger
from opentelemetry import trace


# Attributes every stdlib record has; anything else was passed via ``extra=``.
_STANDARD_RECORD_FIELDS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}

_NOISY_LIBRARIES = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite")


@dataclass(frozen=True, slots=True)
class ServiceIdentity:
    service: str
    environment: str
    version: str


class InterceptHandler(logging.Handler):
    """Forward uvicorn and SQLAlchemy records to Loguru."""

    def emit(self, record: LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        try:
            text = record.getMessage()
        except (TypeError, ValueError):
            text = str(record.msg)

        fields = {key: value for key, value in record.__dict__.items() if key not in _STANDARD_RECORD_FIELDS}
        target = logger.bind(**fields) if fields else logger
        # No format args are passed, so Loguru keeps braces in the text as is.
        target.opt(depth=6, exception=record.exc_info).log(level, text)


def render_record(record: Dict[str, Any], identity: ServiceIdentity) -> Dict[str, Any]:
    """Flatten a Loguru record into the JSON document written for it."""

    document: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["name"],
        **asdict(identity),
    }

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        document["trace_id"] = format(span_context.trace_id, "032x")
        document["span_id"] = format(span_context.span_id, "016x")

    document.update(record["extra"])

    failure = record["exception"]
    if failure is not None and failure.type is not None:
        document["error_type"] = failure.type.__name__
        document["error"] = str(failure.value)
    return document


class JsonSink:
    """Loguru sink writing one JSON document per line."""

    def __init__(self, identity: ServiceIdentity, stream: TextIO | None = None) -> None:
        self._identity = identity
        self._stream = stream

    def __call__(self, message: "logger.Message") -> None:
        stream = self._stream or sys.stdout
        stream.write(json.dumps(render_record(message.record, self._identity), default=str) + "\n")
        stream.flush()


def configure_logging(
    *,
    service_name: str,
    environment: str,
    version: str,
    stream: TextIO | None = None,
) -> None:
    identity = ServiceIdentity(service=service_name, environment=environment, version=version)
    logger.remove()
    logger.add(JsonSink(identity, stream), backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)
