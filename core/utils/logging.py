# SPDX-License-Identifier: MIT
"""Structured JSON logging for the rollout controller.

Every reconcile runs inside a :func:`reconcile_context` so that log lines
emitted anywhere below it carry the controller name, the object key and a
correlation identifier without threading them through call signatures.
"""
from __future__ import annotations

import json
import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Mapping, Optional
from uuid import uuid4

_CORRELATION_ID_VAR: ContextVar[Optional[str]] = ContextVar(
    "rollouts_correlation_id", default=None
)
_OBJECT_CONTEXT_VAR: ContextVar[Mapping[str, str]] = ContextVar(
    "rollouts_object_context", default={}
)


def generate_correlation_id() -> str:
    """Generate a new correlation identifier."""

    return uuid4().hex


def get_correlation_id() -> Optional[str]:
    """Return the currently active correlation identifier, if any."""

    return _CORRELATION_ID_VAR.get()


@contextmanager
def correlation_context(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation identifier for the duration of the block."""

    resolved = correlation_id or generate_correlation_id()
    token = _CORRELATION_ID_VAR.set(resolved)
    try:
        yield resolved
    finally:
        _CORRELATION_ID_VAR.reset(token)


@contextmanager
def reconcile_context(controller: str, key: str) -> Iterator[str]:
    """Tag log records with the controller and object key being reconciled."""

    token = _OBJECT_CONTEXT_VAR.set({"controller": controller, "key": key})
    try:
        with correlation_context() as correlation_id:
            yield correlation_id
    finally:
        _OBJECT_CONTEXT_VAR.reset(token)


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON documents."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "correlation_id"):
            log_data["correlation_id"] = record.correlation_id
        if hasattr(record, "object_context"):
            log_data.update(record.object_context)
        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class StructuredLogger:
    """Wrapper around :mod:`logging` accepting structured keyword fields."""

    def __init__(self, name: str) -> None:
        self.logger = logging.getLogger(name)

    def _log(self, level: int, msg: str, exc_info: bool = False, **kwargs: Any) -> None:
        if not self.logger.isEnabledFor(level):
            return
        extra_data: Dict[str, Any] = {}
        correlation_id = get_correlation_id()
        if correlation_id:
            extra_data["correlation_id"] = correlation_id
        object_context = _OBJECT_CONTEXT_VAR.get()
        if object_context:
            extra_data["object_context"] = dict(object_context)
        if kwargs:
            extra_data["extra_fields"] = kwargs
        self.logger.log(level, msg, exc_info=exc_info, extra=extra_data)

    def debug(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, msg, **kwargs)

    def info(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.INFO, msg, **kwargs)

    def warning(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, msg, **kwargs)

    def error(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, msg, **kwargs)

    def exception(self, msg: str, **kwargs: Any) -> None:
        """Log an error together with the active exception traceback."""

        self._log(logging.ERROR, msg, exc_info=True, **kwargs)

    @contextmanager
    def operation(self, operation_name: str, **context: Any) -> Iterator[Dict[str, Any]]:
        """Time an operation and log its completion or failure.

        The yielded dictionary may be enriched by the caller; its contents are
        included in the completion record.

        Example:
            >>> logger = get_logger("rollouts")
            >>> with logger.operation("apply_mutations", count=3) as op:
            ...     op["applied"] = 3
        """
        start_time = time.monotonic()
        op_context: Dict[str, Any] = {"operation": operation_name, **context}
        try:
            yield op_context
        except Exception as exc:
            self.error(
                f"Failed operation: {operation_name}",
                **op_context,
                status="failure",
                duration_seconds=time.monotonic() - start_time,
                error_type=type(exc).__name__,
                error_message=str(exc),
            )
            raise
        self.debug(
            f"Completed operation: {operation_name}",
            **op_context,
            status=op_context.get("status", "success"),
            duration_seconds=time.monotonic() - start_time,
        )


def configure_logging(level: str = "INFO", use_json: bool = True, stream: Any = None) -> None:
    """Configure process-wide logging.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        use_json: Emit JSON documents instead of the plain text format.
        stream: Output stream, defaults to ``sys.stdout``.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    if use_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    root_logger.addHandler(handler)


def get_logger(name: str) -> StructuredLogger:
    """Return a :class:`StructuredLogger` for ``name`` (typically ``__name__``)."""

    return StructuredLogger(name)


__all__ = [
    "JSONFormatter",
    "StructuredLogger",
    "configure_logging",
    "correlation_context",
    "generate_correlation_id",
    "get_correlation_id",
    "get_logger",
    "reconcile_context",
]
