"""Per-connection transport: buffered cooperative reads and hijacking."""

from __future__ import annotations

import errno
import re
import socket
import time
from collections.abc import Callable

from badserv.hub import Hub
from badserv.request import HeaderTooLarge, MalformedRequest

_HEAD_END_RE = re.compile(rb"\r?\n\r?\n")
_CHUNK = 8192


def format_addr(addr: object) -> str:
    if isinstance(addr, tuple) and len(addr) >= 2:
        host, port = addr[0], addr[1]
        if ":" in str(host):
            return f"[{host}]:{port}"
        return f"{host}:{port}"
    return str(addr)


class RawConn:
    """Exclusive handle on a hijacked connection.

    Writes are buffered until :meth:`flush`. Once closed, every write
    raises ``OSError``.
    """

    __slots__ = ("_hub", "_sock", "_wbuf", "_closed", "remote_addr")

    def __init__(self, hub: Hub, sock: socket.socket, remote_addr: str = "") -> None:
        self._hub = hub
        self._sock = sock
        self._wbuf = bytearray()
        self._closed = False
        self.remote_addr = remote_addr

    @property
    def closed(self) -> bool:
        return self._closed

    def fileno(self) -> int:
        return self._sock.fileno()

    def write(self, data: bytes) -> int:
        if self._closed:
            raise OSError(errno.EBADF, "use of closed connection")
        self._wbuf += data
        return len(data)

    def flush(self) -> None:
        if self._closed:
            raise OSError(errno.EBADF, "use of closed connection")
        if not self._wbuf:
            return
        data = bytes(self._wbuf)
        self._wbuf.clear()
        self._hub.sendall(self._sock, data)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._wbuf.clear()
        fd = self._sock.fileno()
        if fd >= 0:
            self._hub.abort(fd)
        self._sock.close()


class Connection:
    """An accepted client socket owned by one connection greenlet."""

    def __init__(self, hub: Hub, sock: socket.socket, addr: object) -> None:
        self.hub = hub
        self.sock = sock
        self.remote_addr = format_addr(addr)
        self.hijacked = False
        self.closed = False
        self._buf = bytearray()
        self._watching = False

    # -- reading -------------------------------------------------------------

    def _fill(self, timeout: float | None = None) -> bool:
        """Append more bytes to the buffer. False on EOF."""
        data = self.hub.recv(self.sock, _CHUNK, timeout)
        if not data:
            return False
        self._buf += data
        return True

    def read_head(self, max_size: int, timeout: float | None = None) -> bytes | None:
        """Read up to and including the blank line ending a request head.

        Returns the head without its terminator, or ``None`` if the peer
        closed the connection cleanly before sending anything. *timeout*
        bounds the whole head, not each read.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            # Tolerate stray line breaks between pipelined requests
            while self._buf[:2] == b"\r\n" or self._buf[:1] == b"\n":
                del self._buf[: 2 if self._buf[:1] == b"\r" else 1]
            match = _HEAD_END_RE.search(self._buf)
            if match is not None:
                if match.start() > max_size:
                    raise HeaderTooLarge("request header too large")
                head = bytes(self._buf[: match.start()])
                del self._buf[: match.end()]
                return head
            if len(self._buf) > max_size:
                raise HeaderTooLarge("request header too large")
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError("timed out reading request head")
            if not self._fill(remaining):
                if self._buf:
                    raise MalformedRequest("unexpected EOF in request head")
                return None

    def read_line(self, max_size: int) -> bytes:
        """Read one LF-terminated line, stripping CRLF/LF."""
        while True:
            idx = self._buf.find(b"\n")
            if idx >= 0:
                line = bytes(self._buf[:idx])
                del self._buf[: idx + 1]
                return line[:-1] if line.endswith(b"\r") else line
            if len(self._buf) > max_size:
                raise MalformedRequest("line too long")
            if not self._fill():
                raise MalformedRequest("unexpected EOF")

    def read_exact(self, n: int) -> bytes:
        while len(self._buf) < n:
            if not self._fill():
                raise MalformedRequest("unexpected EOF in request body")
        data = bytes(self._buf[:n])
        del self._buf[:n]
        return data

    # -- writing -------------------------------------------------------------

    def sendall(self, data: bytes) -> None:
        if self.hijacked:
            raise RuntimeError("write on hijacked connection")
        self.hub.sendall(self.sock, data)

    # -- peer close detection ------------------------------------------------

    def watch_peer(self, on_close: Callable[[], None]) -> None:
        """Call *on_close* once, from the hub, if the peer closes the connection.

        Uses ``MSG_PEEK`` so nothing is consumed. Stops watching as soon
        as the peer sends more data.
        """
        if self._watching or self.closed or self.hijacked:
            return

        def on_readable(ok: bool) -> None:
            if not ok:
                self._watching = False
                return
            try:
                data = self.sock.recv(1, socket.MSG_PEEK)
            except BlockingIOError:
                return
            except OSError:
                data = b""
            self.stop_watch()
            if not data:
                on_close()

        self.hub.watch_readable(self.sock.fileno(), on_readable)
        self._watching = True

    def stop_watch(self) -> None:
        if self._watching:
            self._watching = False
            fd = self.sock.fileno()
            if fd >= 0:
                self.hub.unwatch_readable(fd)

    # -- ownership -----------------------------------------------------------

    def hijack(self) -> RawConn:
        """Hand the socket over to the caller. The server stops using it."""
        if self.hijacked:
            raise RuntimeError("connection already hijacked")
        if self.closed:
            raise OSError(errno.EBADF, "connection is closed")
        self.stop_watch()
        self.hijacked = True
        return RawConn(self.hub, self.sock, self.remote_addr)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._watching = False
        fd = self.sock.fileno()
        if fd >= 0:
            self.hub.abort(fd)
        self.sock.close()
