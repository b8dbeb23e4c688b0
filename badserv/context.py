"""Immutable execution context carrying values and a cancellation signal.

A context is passed explicitly down the call chain. Deriving a context
never mutates its parent::

    root, cancel_root = with_cancel(background())
    conn_ctx = root.with_value(ConnIDKey, 7)
    req_ctx, cancel_req = with_cancel(conn_ctx)

Cancelling a context cancels every live context derived from it.
"""

from __future__ import annotations

import threading
from collections.abc import Callable

import greenlet

from badserv.hub import Hub, get_hub

CancelFunc = Callable[[], None]

CANCELED = "context canceled"


class _Signal:
    """Cancellation state shared by a cancellable context and its value children."""

    __slots__ = ("parent", "children", "waiters", "err", "_lock")

    def __init__(self, parent: _Signal | None) -> None:
        self.parent = parent
        self.children: set[_Signal] = set()
        self.waiters: list[tuple[Hub, greenlet.greenlet]] = []
        self.err: str | None = None
        self._lock = threading.Lock()

    def attach(self, child: _Signal) -> None:
        with self._lock:
            if self.err is None:
                self.children.add(child)
                return
        child.cancel(self.err)

    def detach(self, child: _Signal) -> None:
        with self._lock:
            self.children.discard(child)

    def cancel(self, err: str) -> None:
        with self._lock:
            if self.err is not None:
                return
            self.err = err
            children, self.children = self.children, set()
            waiters, self.waiters = self.waiters, []
        for hub, g in waiters:
            hub.schedule(g)
        for child in children:
            child.cancel(err)
        if self.parent is not None:
            self.parent.detach(self)


class Context:
    """Read-only carrier of at most one value per key, plus cancellation."""

    __slots__ = ("_parent", "_key", "_value", "_signal")

    def __init__(
        self,
        parent: Context | None = None,
        key: object = None,
        value: object = None,
        signal: _Signal | None = None,
    ) -> None:
        self._parent = parent
        self._key = key
        self._value = value
        self._signal = signal

    def __setattr__(self, name: str, value: object) -> None:
        if hasattr(self, "_signal"):
            raise AttributeError("Context is immutable")
        object.__setattr__(self, name, value)

    def with_value(self, key: object, value: object) -> Context:
        """Return a child context in which *key* maps to *value*."""
        return Context(self, key, value, self._signal)

    def value(self, key: object) -> object:
        """Look *key* up through the parent chain. ``None`` if absent."""
        ctx: Context | None = self
        while ctx is not None:
            if ctx._key is not None and ctx._key is key:
                return ctx._value
            ctx = ctx._parent
        return None

    @property
    def cancellable(self) -> bool:
        return self._signal is not None

    @property
    def err(self) -> str | None:
        """Why the context was cancelled, or ``None`` while it is live."""
        return None if self._signal is None else self._signal.err

    @property
    def cancelled(self) -> bool:
        return self.err is not None

    def wait(self) -> str:
        """Park the current greenlet until this context is cancelled.

        Must be called from a greenlet running under a hub.
        """
        signal = self._signal
        if signal is None:
            raise RuntimeError("context can never be cancelled")
        hub = get_hub()
        if hub is None or greenlet.getcurrent() is hub.greenlet:
            raise RuntimeError("Context.wait() requires a greenlet running under a hub")
        with signal._lock:
            if signal.err is not None:
                return signal.err
            signal.waiters.append((hub, greenlet.getcurrent()))
        while signal.err is None:
            hub.switch()
        return signal.err


_BACKGROUND = Context()


def background() -> Context:
    """The empty root context. Never cancelled, carries no values."""
    return _BACKGROUND


def with_cancel(parent: Context) -> tuple[Context, CancelFunc]:
    """Derive a cancellable child of *parent*.

    The returned function cancels the child (and everything derived from
    it) and releases it from *parent*. Calling it again is a no-op.
    """
    signal = _Signal(parent._signal)
    if parent._signal is not None:
        parent._signal.attach(signal)
    ctx = Context(parent, None, None, signal)

    def cancel() -> None:
        signal.cancel(CANCELED)

    return ctx, cancel
