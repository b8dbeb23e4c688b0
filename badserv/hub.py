"""Greenlet + selectors hub.

Every connection gets its own greenlet. A greenlet that needs to wait for
something (a readable socket, a writable socket, a timer, a cancellation)
records how it should be resumed and switches to the hub. Newly spawned
greenlets go through a ready queue that the hub drains before blocking on
I/O. The hub is the ONLY greenlet that calls select().
"""

from __future__ import annotations

import _thread
import heapq
import itertools
import logging
import selectors
import socket
import time as _time_mod
from collections import deque
from collections.abc import Callable
from typing import Any

import greenlet

_original_sleep = _time_mod.sleep

logger = logging.getLogger("badserv.hub")

ReadyCallback = Callable[[bool], Any]

# Rebuild the timer heap once this many entries are cancelled and they
# make up more than half of it
_MIN_CANCELLED_TIMERS = 100


class _Timer:
    __slots__ = ("deadline", "callback", "cancelled", "_hub")

    def __init__(self, hub: Hub | None, deadline: float, callback: Callable[[], Any]) -> None:
        self.deadline = deadline
        self.callback: Callable[[], Any] | None = callback
        self.cancelled = False
        self._hub = hub

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        # Drop the closure so a parked greenlet is not kept alive by the heap
        self.callback = None
        hub, self._hub = self._hub, None
        if hub is not None:
            hub._timer_cancelled()


# ---------------------------------------------------------------------------
# Hub detection, per thread
# ---------------------------------------------------------------------------


class _HubLocal(_thread._local):
    hub: Hub | None

    def __init__(self) -> None:
        super().__init__()
        self.hub = None


_hub_local = _HubLocal()


def get_hub() -> Hub | None:
    """Return the hub running in the current thread, if any."""
    return _hub_local.hub


def sleep(seconds: float) -> None:
    """Cooperative sleep: yields to the hub when one is running."""
    if seconds < 0:
        raise ValueError("sleep length must be non-negative")
    hub = get_hub()
    if hub is None or greenlet.getcurrent() is hub.greenlet:
        _original_sleep(seconds)
        return
    hub.sleep(seconds)


# ---------------------------------------------------------------------------
# Hub
# ---------------------------------------------------------------------------


class Hub:
    """Cooperative scheduler: ready queue, timers and a selector."""

    def __init__(self, poll_interval: float = 0.05) -> None:
        self.poll_interval = poll_interval
        self.running = False
        self.greenlet: greenlet.greenlet | None = None
        self._sel: selectors.DefaultSelector | None = None
        self._readers: dict[int, ReadyCallback] = {}
        self._writers: dict[int, ReadyCallback] = {}
        self._ready: deque[tuple[greenlet.greenlet, tuple[Any, ...]]] = deque()
        self._timers: list[tuple[float, int, _Timer]] = []
        self._cancelled_timers = 0
        self._seq = itertools.count()
        self._stop_callbacks: list[Callable[[], None]] = []

    # -- scheduling ----------------------------------------------------------

    def spawn(self, fn: Callable[..., Any], *args: Any) -> greenlet.greenlet:
        """Create a greenlet for *fn* and start it on the next iteration.

        Before :meth:`run`, only call this from the thread that will run the hub.
        """
        parent = self.greenlet if self.greenlet is not None else greenlet.getcurrent()
        g = greenlet.greenlet(fn, parent=parent)
        # The first switch passes *args* to fn
        self._ready.append((g, args))
        return g

    def schedule(self, g: greenlet.greenlet, value: object = None) -> None:
        """Resume *g* with *value* on the next hub iteration."""
        self._ready.append((g, (value,)))

    def call_later(self, delay: float, callback: Callable[[], Any]) -> _Timer:
        timer = _Timer(self, _time_mod.monotonic() + delay, callback)
        heapq.heappush(self._timers, (timer.deadline, next(self._seq), timer))
        return timer

    def _timer_cancelled(self) -> None:
        self._cancelled_timers += 1
        if (
            self._cancelled_timers >= _MIN_CANCELLED_TIMERS
            and self._cancelled_timers * 2 > len(self._timers)
        ):
            self._timers = [entry for entry in self._timers if not entry[2].cancelled]
            heapq.heapify(self._timers)
            self._cancelled_timers = 0

    def _pop_timer(self) -> _Timer:
        _, _, timer = heapq.heappop(self._timers)
        if timer.cancelled:
            self._cancelled_timers -= 1
        else:
            # Fired timers no longer count against the heap
            timer._hub = None
        return timer

    def switch(self) -> Any:
        """Park the current greenlet until something resumes it."""
        assert self.greenlet is not None, "hub is not running"
        return self.greenlet.switch()

    def sleep(self, seconds: float) -> None:
        current = greenlet.getcurrent()
        self.call_later(seconds, lambda: self.schedule(current))
        self.switch()

    # -- I/O readiness -------------------------------------------------------

    def _update(self, fd: int) -> None:
        assert self._sel is not None
        mask = 0
        if fd in self._readers:
            mask |= selectors.EVENT_READ
        if fd in self._writers:
            mask |= selectors.EVENT_WRITE
        try:
            self._sel.get_key(fd)
        except KeyError:
            if mask:
                self._sel.register(fd, mask)
            return
        if mask:
            self._sel.modify(fd, mask)
        else:
            self._sel.unregister(fd)

    def watch_readable(self, fd: int, callback: ReadyCallback) -> None:
        """Call *callback(True)* from the hub each time *fd* is readable."""
        if fd in self._readers:
            raise RuntimeError(f"fd {fd} already has a reader")
        self._readers[fd] = callback
        self._update(fd)

    def unwatch_readable(self, fd: int) -> None:
        if self._readers.pop(fd, None) is not None:
            self._update(fd)

    def _wait(
        self, table: dict[int, ReadyCallback], fd: int, timeout: float | None
    ) -> bool:
        if fd < 0:
            raise OSError(9, "Bad file descriptor")
        if fd in table:
            raise RuntimeError(f"fd {fd} already has a waiter")
        current = greenlet.getcurrent()
        timer: _Timer | None = None

        def resume(ok: bool) -> None:
            table.pop(fd, None)
            self._update(fd)
            if timer is not None:
                timer.cancel()
            self.schedule(current, ok)

        table[fd] = resume
        self._update(fd)
        if timeout is not None:
            timer = self.call_later(timeout, lambda: resume(False))
        return bool(self.switch())

    def wait_readable(self, fd: int, timeout: float | None = None) -> bool:
        """Park until *fd* is readable. False on timeout or abort."""
        return self._wait(self._readers, fd, timeout)

    def wait_writable(self, fd: int, timeout: float | None = None) -> bool:
        """Park until *fd* is writable. False on timeout or abort."""
        return self._wait(self._writers, fd, timeout)

    def abort(self, fd: int) -> None:
        """Drop every registration on *fd*, resuming waiters with False."""
        callbacks = [
            cb for cb in (self._readers.pop(fd, None), self._writers.pop(fd, None))
            if cb is not None
        ]
        if self._sel is not None:
            try:
                self._sel.unregister(fd)
            except (KeyError, ValueError):
                pass
        for cb in callbacks:
            cb(False)

    # -- socket helpers ------------------------------------------------------

    def accept(self, sock: socket.socket) -> tuple[socket.socket, Any]:
        while True:
            try:
                conn, addr = sock.accept()
            except BlockingIOError:
                if not self.wait_readable(sock.fileno()):
                    raise ConnectionAbortedError("accept aborted") from None
                continue
            conn.setblocking(False)
            return conn, addr

    def recv(self, sock: socket.socket, bufsize: int, timeout: float | None = None) -> bytes:
        """Read from *sock*, yielding until data is available.

        Raises ``TimeoutError`` on timeout and ``ConnectionAbortedError``
        when the wait was aborted.
        """
        deadline = None if timeout is None else _time_mod.monotonic() + timeout
        while True:
            try:
                return sock.recv(bufsize)
            except BlockingIOError:
                pass
            remaining = None
            if deadline is not None:
                remaining = deadline - _time_mod.monotonic()
                if remaining <= 0:
                    raise TimeoutError("timed out")
            if not self.wait_readable(sock.fileno(), remaining):
                if deadline is not None and _time_mod.monotonic() >= deadline:
                    raise TimeoutError("timed out")
                raise ConnectionAbortedError("recv aborted")

    def sendall(self, sock: socket.socket, data: bytes) -> None:
        """Write all of *data*, yielding whenever the socket is full."""
        view = memoryview(data)
        while view:
            try:
                sent = sock.send(view)
            except BlockingIOError:
                if not self.wait_writable(sock.fileno()):
                    raise ConnectionAbortedError("send aborted") from None
                continue
            view = view[sent:]

    # -- lifecycle -----------------------------------------------------------

    def add_stop_callback(self, callback: Callable[[], None]) -> None:
        """Run *callback* inside the hub once, when it starts stopping."""
        self._stop_callbacks.append(callback)

    def stop(self) -> None:
        """Ask the hub to stop. Safe to call from any thread."""
        self.running = False

    def _run_ready(self) -> None:
        while self._ready:
            g, args = self._ready.popleft()
            if g.dead:
                continue
            try:
                g.switch(*args)
            except Exception:
                logger.exception("greenlet crashed")

    def _run_timers(self) -> None:
        now = _time_mod.monotonic()
        while self._timers and self._timers[0][0] <= now:
            timer = self._pop_timer()
            callback = timer.callback
            if not timer.cancelled and callback is not None:
                callback()

    def _select_timeout(self) -> float:
        if self._ready:
            return 0.0
        timeout = self.poll_interval
        while self._timers and self._timers[0][2].cancelled:
            self._pop_timer()
        if self._timers:
            timeout = min(timeout, max(0.0, self._timers[0][0] - _time_mod.monotonic()))
        return timeout

    def run(self, main: Callable[[], Any] | None = None) -> None:
        """Run the hub loop in the current thread until :meth:`stop`."""
        if _hub_local.hub is not None:
            raise RuntimeError("a hub is already running in this thread")
        self._sel = selectors.DefaultSelector()
        self.greenlet = greenlet.getcurrent()
        self.running = True
        _hub_local.hub = self

        if main is not None:
            self.spawn(main)

        try:
            while self.running:
                self._run_ready()
                self._run_timers()
                # Block on I/O, this is the ONLY blocking point
                events = self._sel.select(timeout=self._select_timeout())
                for key, mask in events:
                    fd = key.fd
                    if mask & selectors.EVENT_READ:
                        reader = self._readers.get(fd)
                        if reader is not None:
                            reader(True)
                    if mask & selectors.EVENT_WRITE:
                        writer = self._writers.get(fd)
                        if writer is not None:
                            writer(True)
                self._run_timers()

            callbacks, self._stop_callbacks = self._stop_callbacks, []
            for callback in callbacks:
                callback()
            self._run_ready()
        finally:
            _hub_local.hub = None
            self._readers.clear()
            self._writers.clear()
            self._timers.clear()
            self._cancelled_timers = 0
            self._sel.close()
            self._sel = None
