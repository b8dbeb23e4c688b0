"""Connection and request identifiers for log correlation."""

from __future__ import annotations

import socket
import threading

from badserv.context import Context


class ConnIDKey:
    """Context key for the connection identifier."""


class RequestIDKey:
    """Context key for the request identifier."""


class Counter:
    """Process-wide monotonic counter. The first value is 1."""

    __slots__ = ("_value", "_lock")

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    @property
    def value(self) -> int:
        """Last value handed out (0 if none yet)."""
        return self._value


def tag_connection(ctx: Context, counter: Counter) -> Context:
    return ctx.with_value(ConnIDKey, counter.next())


def tag_request(ctx: Context, counter: Counter) -> Context:
    return ctx.with_value(RequestIDKey, counter.next())


def conn_id(ctx: Context) -> int | None:
    value = ctx.value(ConnIDKey)
    return value if isinstance(value, int) else None


def request_id(ctx: Context) -> int | None:
    value = ctx.value(RequestIDKey)
    return value if isinstance(value, int) else None


class ConnTagger:
    """``conn_context`` hook for :class:`badserv.server.Server`.

    Called once per accepted connection, before any request on it is read.
    """

    def __init__(self, counter: Counter | None = None) -> None:
        self.counter = counter if counter is not None else Counter()

    def __call__(self, ctx: Context, sock: socket.socket) -> Context:
        return tag_connection(ctx, self.counter)
