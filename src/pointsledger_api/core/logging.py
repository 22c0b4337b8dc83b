"""Structured JSON logging for the points ledger service."""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace

# Stdlib loggers that are noisy at INFO; ledger events come through Loguru directly.
_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "apscheduler.executors.default")

_STDLIB_ATTRS = frozenset(vars(logging.makeLogRecord({})).keys()) | {"message", "taskName"}


class InterceptHandler(logging.Handler):
    """Forward stdlib records (uvicorn, sqlalchemy, apscheduler, alembic) to Loguru."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk out of the logging module so Loguru reports the real caller.
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        extra = {key: value for key, value in vars(record).items() if key not in _STDLIB_ATTRS}
        logger.bind(stdlib_logger=record.name, **extra).opt(
            depth=depth, exception=record.exc_info
        ).log(level, record.getMessage())


def _attach_trace_context(record: Dict[str, Any]) -> None:
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        record["extra"]["trace_id"] = f"{span_context.trace_id:032x}"
        record["extra"]["span_id"] = f"{span_context.span_id:016x}"


def _json_sink(service: Dict[str, str]):
    def _write(message: "logger.Message") -> None:
        record = message.record
        payload: Dict[str, Any] = {
            "timestamp": record["time"].isoformat(),
            "level": record["level"].name.lower(),
            "message": record["message"],
            "logger": record["name"],
            **service,
        }
        payload.update(record["extra"])
        if record["exception"] is not None:
            payload["exception"] = repr(record["exception"].value)
        sys.stdout.write(json.dumps(payload, default=str) + "\n")

    return _write


def configure_logging(*, service_name: str, environment: str, version: str, level: str = "INFO") -> None:
    """Route Loguru and stdlib logging into one JSON stream on stdout.

    Every line carries the service identity and, inside a traced request,
    the active OpenTelemetry trace and span ids so ledger events can be
    joined with request spans.
    """

    service = {"service": service_name, "environment": environment, "version": version}
    logger.remove()
    logger.configure(patcher=_attach_trace_context)
    logger.add(_json_sink(service), level=level.upper(), backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


__all__ = ["InterceptHandler", "configure_logging"]
