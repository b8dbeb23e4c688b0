from __future__ import annotations

from email.utils import formatdate
from typing import Protocol

from badserv.conn import RawConn

_REASON_PHRASES: dict[int, str] = {
    200: "OK",
    201: "Created",
    204: "No Content",
    206: "Partial Content",
    301: "Moved Permanently",
    302: "Found",
    304: "Not Modified",
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    413: "Content Too Large",
    416: "Range Not Satisfiable",
    431: "Request Header Fields Too Large",
    500: "Internal Server Error",
    502: "Bad Gateway",
    503: "Service Unavailable",
    504: "Gateway Timeout",
}

# Statuses that never carry a body
_NO_BODY = {204, 304}


class Transport(Protocol):
    def sendall(self, data: bytes) -> None: ...


class HijackError(RuntimeError):
    """The connection cannot be (or has already been) taken over."""


def reason_phrase(status: int) -> str:
    return _REASON_PHRASES.get(status, "Unknown")


class Response:
    """HTTP response object that buffers data and sends on finalize."""

    __slots__ = ("status", "_headers", "_body_parts", "_transport", "_head", "_finalized", "_hijacked")

    status: int
    _headers: dict[str, str]
    _body_parts: list[bytes]
    _transport: Transport
    _head: bool
    _finalized: bool
    _hijacked: bool

    def __init__(self, transport: Transport, *, head: bool = False) -> None:
        self.status = 200
        self._headers = {}
        self._body_parts = []
        self._transport = transport
        self._head = head
        self._finalized = False
        self._hijacked = False

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def hijacked(self) -> bool:
        return self._hijacked

    def _check_writable(self) -> None:
        if self._hijacked:
            raise HijackError("response used after hijack")

    def set_status(self, code: int) -> None:
        self._check_writable()
        self.status = code

    def set_header(self, name: str, value: str) -> None:
        self._check_writable()
        self._headers[name] = value

    def get_header(self, name: str) -> str | None:
        lowered = name.lower()
        for key, value in self._headers.items():
            if key.lower() == lowered:
                return value
        return None

    def del_header(self, name: str) -> None:
        self._check_writable()
        lowered = name.lower()
        for key in [k for k in self._headers if k.lower() == lowered]:
            del self._headers[key]

    def write(self, data: bytes | str) -> None:
        self._check_writable()
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._body_parts.append(data)

    def error(self, message: str, status: int) -> None:
        """Replace the response with a plain-text error."""
        self._check_writable()
        self.del_header("Content-Length")
        self.set_header("Content-Type", "text/plain; charset=utf-8")
        self.set_header("X-Content-Type-Options", "nosniff")
        self.status = status
        self._body_parts = [message.encode("utf-8") + b"\n"]

    def hijack(self) -> RawConn:
        """Take exclusive ownership of the underlying connection.

        Afterwards this response can no longer be written to and the
        server will not touch the connection again.
        """
        if self._hijacked:
            raise HijackError("connection already hijacked")
        if self._finalized:
            raise HijackError("response already sent")
        hijack = getattr(self._transport, "hijack", None)
        if hijack is None:
            raise HijackError("transport does not support hijacking")
        try:
            raw: RawConn = hijack()
        except (OSError, RuntimeError) as e:
            raise HijackError(f"hijacking connection: {e}") from e
        self._hijacked = True
        self._finalized = True
        return raw

    def _serialize(self, keep_alive: bool = True) -> bytes:
        body = b"".join(self._body_parts)
        status = self.status
        lines = [f"HTTP/1.1 {status} {reason_phrase(status)}\r\n"]

        has_date = False
        declared_length: str | None = None
        for name, value in self._headers.items():
            lowered = name.lower()
            if lowered == "content-length":
                declared_length = value
                continue
            if lowered == "date":
                has_date = True
            lines.append(f"{name}: {value}\r\n")
        if not has_date:
            lines.append(f"Date: {formatdate(usegmt=True)}\r\n")

        if status in _NO_BODY or 100 <= status < 200:
            body = b""
        elif self._head:
            # HEAD keeps the length of the body it would have sent
            length = declared_length if declared_length is not None else str(len(body))
            lines.append(f"Content-Length: {length}\r\n")
            body = b""
        else:
            lines.append(f"Content-Length: {len(body)}\r\n")

        if not keep_alive:
            lines.append("Connection: close\r\n")
        lines.append("\r\n")
        return "".join(lines).encode("latin-1") + body

    def _finalize(self, keep_alive: bool = True) -> None:
        if self._finalized:
            return
        self._finalized = True
        self._transport.sendall(self._serialize(keep_alive))
