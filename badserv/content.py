"""Serve an in-memory document with standard HTTP content semantics."""

from __future__ import annotations

import datetime as dt
import mimetypes
import posixpath
from email.utils import formatdate, parsedate_to_datetime

from badserv.request import Request
from badserv.response import Response


class _BadRange(ValueError):
    pass


def _content_type(name: str, content: bytes) -> str:
    ctype, _ = mimetypes.guess_type(name)
    if ctype is None:
        if posixpath.splitext(name)[1]:
            return "application/octet-stream"
        try:
            content[:512].decode("utf-8")
        except UnicodeDecodeError:
            return "application/octet-stream"
        return "text/plain; charset=utf-8"
    if ctype.startswith("text/"):
        return ctype + "; charset=utf-8"
    return ctype


def parse_range(header: str, size: int) -> list[tuple[int, int]]:
    """Parse a ``Range`` header into inclusive ``(start, end)`` pairs.

    Raises ``ValueError`` if the header is malformed or no range overlaps
    the content.
    """
    unit, sep, spec = header.partition("=")
    if not sep or unit.strip().lower() != "bytes":
        raise _BadRange("invalid range unit")
    ranges: list[tuple[int, int]] = []
    for part in spec.split(","):
        part = part.strip()
        if not part:
            continue
        first, sep, last = part.partition("-")
        first, last = first.strip(), last.strip()
        if not sep or not (first.isdigit() or last.isdigit()):
            raise _BadRange("invalid range")
        if not first:
            # Suffix range: the last N bytes
            length = int(last)
            if length == 0:
                continue
            ranges.append((max(0, size - length), size - 1))
            continue
        start = int(first)
        if start >= size:
            continue
        if last:
            if not last.isdigit():
                raise _BadRange("invalid range")
            end = int(last)
            if end < start:
                raise _BadRange("invalid range")
            end = min(end, size - 1)
        else:
            end = size - 1
        ranges.append((start, end))
    if not ranges:
        raise _BadRange("no overlap")
    return ranges


def _not_modified(request: Request, modtime: float) -> bool:
    if request.method not in ("GET", "HEAD") or not modtime:
        return False
    ims = request.headers.get("if-modified-since")
    if not ims:
        return False
    try:
        parsed = parsedate_to_datetime(ims)
    except (TypeError, ValueError, IndexError, OverflowError):
        return False
    if parsed.tzinfo is None:
        # -0000 and asctime dates come back naive; HTTP dates are UTC
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    since = parsed.timestamp()
    # HTTP dates have one-second resolution
    return int(modtime) <= since


def serve_content(
    request: Request,
    response: Response,
    name: str,
    modtime: float,
    content: bytes,
) -> None:
    """Reply with *content*, honouring conditional and range requests.

    *modtime* is a POSIX timestamp; 0 disables ``Last-Modified``.
    """
    if modtime:
        response.set_header("Last-Modified", formatdate(int(modtime), usegmt=True))

    if _not_modified(request, modtime):
        response.del_header("Content-Type")
        response.set_status(304)
        return

    if response.get_header("Content-Type") is None:
        response.set_header("Content-Type", _content_type(name, content))
    response.set_header("Accept-Ranges", "bytes")

    size = len(content)
    range_header = request.headers.get("range")
    if range_header and request.method in ("GET", "HEAD"):
        try:
            ranges = parse_range(range_header, size)
        except ValueError:
            response.set_header("Content-Range", f"bytes */{size}")
            response.error("invalid range: failed to overlap", 416)
            return
        if len(ranges) == 1:
            start, end = ranges[0]
            response.set_status(206)
            response.set_header("Content-Range", f"bytes {start}-{end}/{size}")
            response.write(content[start : end + 1])
            return

    response.set_status(200)
    response.write(content)
