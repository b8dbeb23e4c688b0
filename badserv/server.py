from __future__ import annotations

import errno
import signal
import socket
import threading
from collections.abc import Callable

from badserv import log
from badserv.conn import Connection, format_addr
from badserv.context import CancelFunc, Context, background, with_cancel
from badserv.hub import Hub
from badserv.request import Request, RequestError
from badserv.response import Response, reason_phrase

HandlerFunc = Callable[[Request, Response], None]
ConnContextFunc = Callable[[Context, socket.socket], Context]

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, float] = {
    "max_header_size": 32768,
    "max_body_size": 1_048_576,
    "read_header_timeout": 3600.0,
    "backlog": 1024,
}

# accept() errors worth retrying after a short pause
_TEMPORARY_ACCEPT_ERRORS = {
    errno.ECONNABORTED,
    errno.EMFILE,
    errno.ENFILE,
    errno.ENOBUFS,
    errno.ENOMEM,
}
_MAX_ACCEPT_DELAY = 1.0


# ---------------------------------------------------------------------------
# Socket creation
# ---------------------------------------------------------------------------


def _create_listen_socket(host: str, port: int, *, backlog: int = 1024) -> socket.socket:
    """Create a non-blocking TCP listening socket.

    An empty *host* binds every interface.
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(backlog)
        sock.setblocking(False)
    except BaseException:
        sock.close()
        raise
    return sock


# ---------------------------------------------------------------------------
# Connection handling
# ---------------------------------------------------------------------------


def _try_send_error(conn: Connection, status_code: int) -> None:
    """Best-effort error response. Does NOT close the connection (caller's finally does)."""
    reason = reason_phrase(status_code)
    body = reason.encode()
    resp = (
        f"HTTP/1.1 {status_code} {reason}\r\n"
        f"Content-Type: text/plain; charset=utf-8\r\n"
        f"Content-Length: {len(body)}\r\nConnection: close\r\n\r\n"
    ).encode() + body
    try:
        conn.sendall(resp)
    except (OSError, RuntimeError):
        pass  # best effort


class Server:
    """Single-threaded HTTP/1.1 server: one greenlet per connection."""

    def __init__(
        self,
        handler: HandlerFunc,
        host: str = "127.0.0.1",
        port: int = 8000,
        *,
        conn_context: ConnContextFunc | None = None,
        config: dict[str, float] | None = None,
    ) -> None:
        self.handler = handler
        self.host = host
        self.port = port
        self.conn_context = conn_context
        self.config = {**DEFAULT_CONFIG, **(config or {})}
        self.hub = Hub()
        self.connections: set[Connection] = set()
        self._sock: socket.socket | None = None
        self._ctx, self._cancel = with_cancel(background())
        self._closed = threading.Event()

    @property
    def address(self) -> tuple[str, int]:
        assert self._sock is not None, "server is not bound"
        addr = self._sock.getsockname()
        return addr[0], addr[1]

    def bind(self) -> None:
        if self._sock is None:
            self._sock = _create_listen_socket(
                self.host, self.port, backlog=int(self.config["backlog"]),
            )

    def serve(self, *, _ready: threading.Event | None = None) -> None:
        """Run the hub in the calling thread until :meth:`close`."""
        self.bind()
        assert self._sock is not None
        try:
            if self._closed.is_set():
                return
            if _ready is not None:
                _ready.set()
            self.hub.add_stop_callback(self._shutdown)
            self.hub.run(self._run_acceptor)
        finally:
            self._sock.close()

    def close(self) -> None:
        """Stop the server. Safe from any thread and from signal handlers."""
        self._closed.set()
        self.hub.stop()

    def _shutdown(self) -> None:
        """Runs inside the hub once it stops looping."""
        assert self._sock is not None
        fd = self._sock.fileno()
        if fd >= 0:
            self.hub.abort(fd)
        self._cancel()
        for conn in list(self.connections):
            conn.close()

    def _run_acceptor(self) -> None:
        """Accept connections and spawn handler greenlets."""
        assert self._sock is not None
        delay = 0.0
        while self.hub.running:
            try:
                client, addr = self.hub.accept(self._sock)
            except ConnectionAbortedError:
                break
            except OSError as e:
                if not self.hub.running:
                    break
                if e.errno in _TEMPORARY_ACCEPT_ERRORS:
                    delay = min(max(delay * 2, 0.005), _MAX_ACCEPT_DELAY)
                    log.debug(None, "accept error, retrying", error=e, delay=delay)
                    self.hub.sleep(delay)
                    continue
                log.error(None, "acceptor error", error=e)
                break
            delay = 0.0
            self.hub.spawn(self._handle_connection, client, addr)

    def _handle_connection(self, sock: socket.socket, addr: object) -> None:
        """Per-connection greenlet: read requests, dispatch to the handler."""
        conn = Connection(self.hub, sock, addr)
        ctx, cancel_conn = with_cancel(self._ctx)
        if self.conn_context is not None:
            ctx = self.conn_context(ctx, sock)
        self.connections.add(conn)
        max_header_size = int(self.config["max_header_size"])
        max_body_size = int(self.config["max_body_size"])
        read_header_timeout = float(self.config["read_header_timeout"])
        log.debug(ctx, "connection accepted", remote_addr=conn.remote_addr)
        try:
            while not ctx.cancelled:
                req_ctx, cancel_req = with_cancel(ctx)
                try:
                    try:
                        head = conn.read_head(max_header_size, read_header_timeout)
                        if head is None:
                            return  # EOF, finally block closes
                        request = Request._from_head(
                            head,
                            conn,
                            max_body_size=max_body_size,
                            remote_addr=conn.remote_addr,
                            ctx=req_ctx,
                            on_body_done=lambda: conn.watch_peer(cancel_conn),
                        )
                    except RequestError as e:
                        log.debug(ctx, "reading request", error=e, status=e.status)
                        _try_send_error(conn, e.status)
                        return
                    if not self._serve_request(conn, request, cancel_conn):
                        return
                finally:
                    cancel_req()
        except TimeoutError:
            log.debug(ctx, "read header timeout", remote_addr=conn.remote_addr)
        except OSError as e:
            log.debug(ctx, "connection error", error=e)  # network error, just close
        finally:
            cancel_conn()
            self.connections.discard(conn)
            if not conn.hijacked:
                conn.close()

    def _serve_request(self, conn: Connection, request: Request, cancel_conn: CancelFunc) -> bool:
        """Run the handler for one request. Returns True to keep the connection."""
        response = Response(conn, head=request.method == "HEAD")
        if request.body_consumed:
            conn.watch_peer(cancel_conn)

        try:
            self.handler(request, response)
        except RequestError as e:
            # Body could not be read, framing is lost
            log.debug(request.ctx, "reading request body", error=e, status=e.status)
            if not response.finalized and not conn.hijacked:
                _try_send_error(conn, e.status)
            return False
        except Exception:
            log.error(request.ctx, "panic serving", remote_addr=conn.remote_addr, exc_info=True)
            # Send 500 if response not yet sent
            if not response.finalized and not conn.hijacked:
                _try_send_error(conn, 500)
            return False
        finally:
            conn.stop_watch()

        if conn.hijacked:
            return False
        if request.ctx.cancelled:
            return False  # peer is gone or the server is stopping

        keep_alive = request.keep_alive
        if not request.body_consumed:
            try:
                request.read_body()
            except RequestError:
                keep_alive = False
            conn.stop_watch()
        response._finalize(keep_alive)
        return keep_alive


# ---------------------------------------------------------------------------
# Signal watcher greenlet
# ---------------------------------------------------------------------------


def _signal_watcher(server: Server, sig_sock: socket.socket) -> None:
    """Greenlet that monitors the signal wakeup socket.

    When a signal byte arrives (written by CPython's C-level signal handler
    via set_wakeup_fd), this greenlet resumes and stops the server.
    """
    try:
        data = server.hub.recv(sig_sock, 16)
    except OSError:
        return
    if data:
        log.info(None, "shutting down", signal=signal.Signals(data[0]).name)
        server.close()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def serve(
    handler: HandlerFunc,
    host: str = "127.0.0.1",
    port: int = 8000,
    *,
    conn_context: ConnContextFunc | None = None,
    config: dict[str, float] | None = None,
    _ready: threading.Event | None = None,
) -> None:
    """Start the HTTP server in the main thread; SIGINT/SIGTERM stop it.

    Args:
        handler: Function called for each HTTP request.
        host: Address to bind to.
        port: Port to bind to.
        conn_context: Called once per accepted connection to derive the
                      connection's context.
        config: Optional limits. Supported keys: max_header_size,
                max_body_size, read_header_timeout, backlog.
    """
    server = Server(handler, host, port, conn_context=conn_context, config=config)
    server.bind()
    log.info(None, "Listening HTTP", addr=format_addr(server.address))

    sig_r, sig_w = socket.socketpair()
    sig_r.setblocking(False)
    sig_w.setblocking(False)
    old_wakeup = signal.set_wakeup_fd(sig_w.fileno())
    old_handlers = {
        sig: signal.signal(sig, lambda signum, frame: None)
        for sig in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        server.hub.spawn(_signal_watcher, server, sig_r)
        server.serve(_ready=_ready)
    finally:
        signal.set_wakeup_fd(old_wakeup)
        for sig, old in old_handlers.items():
            signal.signal(sig, old)
        sig_r.close()
        sig_w.close()
