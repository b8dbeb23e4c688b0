"""Structured logging tagged with connection and request ids.

Callers pass their context explicitly::

    log.info(ctx, "handling", action=action)

and :class:`ContextHandler` adds ``request_id`` and ``conn_id`` to the
record before handing it to the real handler.
"""

from __future__ import annotations

import datetime as dt
import logging
import sys
from typing import Any, TextIO

from badserv.context import Context
from badserv.ids import conn_id, request_id

__all__ = [
    "ContextHandler",
    "KeyValueFormatter",
    "parse_level",
    "setup_logging",
    "debug",
    "info",
    "warning",
    "error",
]

logger = logging.getLogger("badserv")

LOG_RECORD_BUILTIN_ATTRS = {
    "args",
    "asctime",
    "created",
    "exc_info",
    "exc_text",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "msg",
    "name",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "thread",
    "threadName",
    "taskName",
    "ctx",
}

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_LEVEL_NAMES = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "ERROR",
}


class ContextHandler(logging.Handler):
    """Wrap *handler*, adding ``request_id``/``conn_id`` from the record's context."""

    def __init__(self, handler: logging.Handler) -> None:
        super().__init__()
        self.handler = handler

    def emit(self, record: logging.LogRecord) -> None:
        # Handler.handle() runs filters but not the level check
        if record.levelno < self.handler.level:
            return
        ctx = getattr(record, "ctx", None)
        if isinstance(ctx, Context):
            req_id = request_id(ctx)
            if req_id is not None:
                record.request_id = req_id
            c_id = conn_id(ctx)
            if c_id is not None:
                record.conn_id = c_id
        self.handler.handle(record)

    def flush(self) -> None:
        self.handler.flush()

    def close(self) -> None:
        self.handler.close()
        super().close()


def _quote(value: object) -> str:
    text = str(value)
    if text == "" or any(c in text for c in ' ="\\\n\t'):
        escaped = text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n").replace("\t", "\\t")
        return f'"{escaped}"'
    return text


class KeyValueFormatter(logging.Formatter):
    """``time=... level=... msg=... key=value`` lines."""

    def format(self, record: logging.LogRecord) -> str:
        created = dt.datetime.fromtimestamp(record.created).astimezone()
        parts = [
            f"time={created.isoformat(timespec='milliseconds')}",
            f"level={_LEVEL_NAMES.get(record.levelno, record.levelname)}",
            f"msg={_quote(record.getMessage())}",
        ]
        for key, val in record.__dict__.items():
            if key not in LOG_RECORD_BUILTIN_ATTRS:
                parts.append(f"{key}={_quote(val)}")
        if record.exc_info:
            parts.append(f"exc_info={_quote(self.formatException(record.exc_info))}")
        return " ".join(parts)


def parse_level(text: str) -> int:
    try:
        return _LEVELS[text.strip().lower()]
    except KeyError:
        raise ValueError(f"unknown log level {text!r}") from None


def setup_logging(level: int = logging.INFO, stream: TextIO | None = None) -> ContextHandler:
    """Send ``badserv`` logs to *stream* (stderr by default) at *level*."""
    base = logging.StreamHandler(stream if stream is not None else sys.stderr)
    base.setLevel(level)
    base.setFormatter(KeyValueFormatter())
    handler = ContextHandler(base)

    for old in list(logger.handlers):
        if isinstance(old, ContextHandler):
            logger.removeHandler(old)
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return handler


def _log(level: int, ctx: Context | None, msg: str, attrs: dict[str, Any], exc_info: bool = False) -> None:
    if not logger.isEnabledFor(level):
        return
    logger.log(level, msg, extra={"ctx": ctx, **attrs}, exc_info=exc_info, stacklevel=3)


def debug(ctx: Context | None, msg: str, **attrs: Any) -> None:
    _log(logging.DEBUG, ctx, msg, attrs)


def info(ctx: Context | None, msg: str, **attrs: Any) -> None:
    _log(logging.INFO, ctx, msg, attrs)


def warning(ctx: Context | None, msg: str, **attrs: Any) -> None:
    _log(logging.WARNING, ctx, msg, attrs)


def error(ctx: Context | None, msg: str, *, exc_info: bool = False, **attrs: Any) -> None:
    _log(logging.ERROR, ctx, msg, attrs, exc_info=exc_info)
