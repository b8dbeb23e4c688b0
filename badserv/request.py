from __future__ import annotations

import re
import urllib.parse
from collections.abc import Callable
from typing import TYPE_CHECKING

from badserv.context import Context, background

if TYPE_CHECKING:
    from badserv.conn import Connection

_TOKEN_RE = re.compile(rb"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
_VERSION_RE = re.compile(r"^HTTP/1\.[01]$")
_BAD_VALUE_RE = re.compile(rb"[\x00-\x08\x0a-\x1f\x7f]")
_MAX_CHUNK_LINE = 4096


class RequestError(Exception):
    """The request could not be read. ``status`` is the reply to send."""

    status = 400


class MalformedRequest(RequestError, ValueError):
    status = 400


class HeaderTooLarge(RequestError):
    status = 431


class BodyTooLarge(RequestError):
    status = 413


def parse_head(head: bytes) -> tuple[str, str, str, list[tuple[bytes, bytes]]]:
    """Split a request head into method, target, protocol and header pairs.

    *head* is everything before the blank line. Lines may end in CRLF or
    a bare LF.
    """
    lines = [line[:-1] if line.endswith(b"\r") else line for line in head.split(b"\n")]
    parts = lines[0].split(b" ")
    if len(parts) != 3:
        raise MalformedRequest("malformed request line")
    method_b, target_b, proto_b = parts
    if not _TOKEN_RE.match(method_b):
        raise MalformedRequest("invalid method")
    if not target_b or any(c <= 0x20 or c == 0x7F for c in target_b):
        raise MalformedRequest("invalid request target")
    proto = proto_b.decode("latin-1")
    if not _VERSION_RE.match(proto):
        raise MalformedRequest(f"malformed HTTP version {proto!r}")

    headers: list[tuple[bytes, bytes]] = []
    for line in lines[1:]:
        if not line:
            continue
        if line[:1] in (b" ", b"\t"):
            raise MalformedRequest("obsolete header line folding")
        name, sep, value = line.partition(b":")
        if not sep or not _TOKEN_RE.match(name):
            raise MalformedRequest(f"malformed header line {line[:64]!r}")
        value = value.strip(b" \t")
        if _BAD_VALUE_RE.search(value):
            raise MalformedRequest(f"invalid value for header {name.decode('latin-1')!r}")
        headers.append((name, value))

    return method_b.decode("latin-1"), target_b.decode("latin-1"), proto, headers


class _BodyReader:
    """Reads exactly one request body off the connection, once."""

    __slots__ = ("_conn", "_chunked", "_length", "_max_size", "_on_done", "_error", "done")

    def __init__(
        self,
        conn: Connection | None,
        *,
        chunked: bool,
        length: int,
        max_size: int,
        on_done: Callable[[], None] | None = None,
    ) -> None:
        self._conn = conn
        self._chunked = chunked
        self._length = length
        self._max_size = max_size
        self._on_done = on_done
        self._error: RequestError | None = None
        self.done = conn is None or (not chunked and length == 0)

    def read_all(self) -> bytes:
        if self.done:
            return b""
        if self._error is not None:
            raise self._error
        assert self._conn is not None
        try:
            if self._chunked:
                body = self._read_chunked(self._conn)
            else:
                if self._length > self._max_size:
                    raise BodyTooLarge("request body too large")
                body = self._conn.read_exact(self._length)
        except RequestError as e:
            # Framing is lost, the body cannot be read again
            self._error = e
            raise
        self.done = True
        if self._on_done is not None:
            self._on_done()
        return body

    def _read_chunked(self, conn: Connection) -> bytes:
        parts: list[bytes] = []
        total = 0
        while True:
            line = conn.read_line(_MAX_CHUNK_LINE)
            size_text = line.split(b";", 1)[0].strip()
            try:
                size = int(size_text, 16)
            except ValueError:
                raise MalformedRequest("malformed chunk size") from None
            if size < 0:
                raise MalformedRequest("malformed chunk size")
            if size == 0:
                # Trailer section, ends with an empty line
                while conn.read_line(_MAX_CHUNK_LINE):
                    pass
                return b"".join(parts)
            total += size
            if total > self._max_size:
                raise BodyTooLarge("request body too large")
            parts.append(conn.read_exact(size))
            if conn.read_line(_MAX_CHUNK_LINE):
                raise MalformedRequest("malformed chunk terminator")


class Request:
    """HTTP request: parsed head plus a lazily read body."""

    __slots__ = (
        "method",
        "path",
        "full_path",
        "query_params",
        "headers",
        "proto",
        "host",
        "remote_addr",
        "ctx",
        "_raw_headers",
        "_body",
        "_body_reader",
    )

    method: str
    path: str
    full_path: str
    query_params: dict[str, str]
    headers: dict[str, str]
    proto: str
    host: str
    remote_addr: str
    ctx: Context

    def __init__(
        self,
        *,
        method: str,
        path: str,
        full_path: str | None = None,
        query_params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        body: bytes = b"",
        proto: str = "HTTP/1.1",
        host: str = "",
        remote_addr: str = "",
        ctx: Context | None = None,
    ) -> None:
        self.method = method
        self.path = path
        self.full_path = full_path if full_path is not None else path
        self.query_params = query_params if query_params is not None else {}
        self.headers = headers if headers is not None else {}
        self.proto = proto
        self.host = host or self.headers.get("host", "")
        self.remote_addr = remote_addr
        self.ctx = ctx if ctx is not None else background()
        self._raw_headers = [
            (k.encode("latin-1"), v.encode("latin-1")) for k, v in self.headers.items()
        ]
        self._body: bytes | None = body
        self._body_reader: _BodyReader | None = None

    @classmethod
    def _from_head(
        cls,
        head: bytes,
        conn: Connection | None = None,
        *,
        max_body_size: int = 1_048_576,
        remote_addr: str = "",
        ctx: Context | None = None,
        on_body_done: Callable[[], None] | None = None,
    ) -> Request:
        """Build a Request from a raw head; the body stays on *conn*."""
        method, target, proto, raw_headers = parse_head(head)

        headers: dict[str, str] = {}
        host_count = 0
        for key_bytes, val_bytes in raw_headers:
            key = key_bytes.decode("latin-1").lower()
            if key == "host":
                host_count += 1
            headers[key] = val_bytes.decode("latin-1")
        if host_count > 1:
            raise MalformedRequest("too many Host headers")

        host = headers.get("host", "")
        full_path = target
        if target.startswith(("http://", "https://")):
            split = urllib.parse.urlsplit(target)
            host = split.netloc
            target = split.path or "/"
            if split.query:
                target += "?" + split.query
        elif proto == "HTTP/1.1" and host_count == 0:
            raise MalformedRequest("missing required Host header")

        # Split path and query string
        if "?" in target:
            path_part, _, qs = target.partition("?")
            query_params = {k: v[0] for k, v in urllib.parse.parse_qs(qs).items()}
        else:
            path_part = target
            query_params = {}

        chunked, length = _body_framing(raw_headers)

        req = cls.__new__(cls)
        req.method = method
        req.path = path_part
        req.full_path = full_path
        req.query_params = query_params
        req.headers = headers
        req.proto = proto
        req.host = host
        req.remote_addr = remote_addr
        req.ctx = ctx if ctx is not None else background()
        req._raw_headers = raw_headers  # preserve for duplicate access
        req._body = None
        req._body_reader = _BodyReader(
            conn,
            chunked=chunked,
            length=length,
            max_size=max_body_size,
            on_done=on_body_done,
        )
        return req

    @property
    def raw_headers(self) -> list[tuple[bytes, bytes]]:
        """Headers as ordered list of (name, value) byte pairs.

        Preserves duplicates (e.g. multiple Cookie headers).
        """
        return self._raw_headers

    @property
    def keep_alive(self) -> bool:
        tokens = {t.strip().lower() for t in self.headers.get("connection", "").split(",")}
        if self.proto == "HTTP/1.0":
            return "keep-alive" in tokens
        return "close" not in tokens

    @property
    def body_consumed(self) -> bool:
        return self._body is not None or self._body_reader is None or self._body_reader.done

    def read_body(self) -> bytes:
        """Read the whole body off the connection (once) and return it."""
        if self._body is None:
            assert self._body_reader is not None
            self._body = self._body_reader.read_all()
        return self._body

    @property
    def body(self) -> bytes:
        return self.read_body()

    def dump(self) -> bytes:
        """Return the request as it would appear on the wire, body included."""
        body = self.read_body()
        out = [f"{self.method} {self.full_path} {self.proto}\r\n".encode("latin-1")]
        if self.host:
            out.append(b"Host: " + self.host.encode("latin-1") + b"\r\n")
        for name, value in self._raw_headers:
            if name.lower() == b"host":
                continue
            out.append(name + b": " + value + b"\r\n")
        out.append(b"\r\n")
        out.append(body)
        return b"".join(out)


def _body_framing(raw_headers: list[tuple[bytes, bytes]]) -> tuple[bool, int]:
    te: str | None = None
    lengths: set[str] = set()
    for name, value in raw_headers:
        lowered = name.lower()
        if lowered == b"transfer-encoding":
            te = value.decode("latin-1")
        elif lowered == b"content-length":
            lengths.update(v.strip() for v in value.decode("latin-1").split(","))
    if te is not None:
        if lengths:
            raise MalformedRequest("both Transfer-Encoding and Content-Length")
        if te.strip().lower() != "chunked":
            raise MalformedRequest(f"unsupported transfer encoding {te!r}")
        return True, 0
    if not lengths:
        return False, 0
    if len(lengths) != 1:
        raise MalformedRequest("conflicting Content-Length values")
    text = lengths.pop()
    if not text.isdigit() or not text.isascii():
        raise MalformedRequest(f"bad Content-Length {text!r}")
    return False, int(text)
