"""Action engine: maps the ``action`` query parameter to a connection behavior."""

from __future__ import annotations

import enum
import sys
import time
from typing import TextIO

from badserv import log
from badserv.content import serve_content
from badserv.context import Context
from badserv.hub import sleep
from badserv.ids import Counter, tag_request
from badserv.request import Request, RequestError
from badserv.response import HijackError, Response

LIMERICK = b"""In the realm of requests and replies,
HTTP with its status denies.
With a 404 frown,
It turns users to clowns,
As they search for the page that belies.
"""

BYTE_INTERVAL: float = 0.1  # 10 bytes per second


class Action(str, enum.Enum):
    NONE = ""
    HANG = "hang"
    CLOSE = "close"
    SLOW_WRITE = "slow-write"

    @classmethod
    def parse(cls, value: str) -> Action | None:
        try:
            return cls(value)
        except ValueError:
            return None


def slow_response(host: str, content: bytes) -> bytes:
    """Hand-written HTTP/1.1 response used by ``slow-write``."""
    head = (
        "HTTP/1.1 200 OK\r\n"
        f"Host: {host}\r\n"
        f"Content-Length: {len(content)}\r\n"
        "Content-Type: text/plain\r\n\r\n"
    )
    return head.encode("latin-1") + content


class Service:
    """Request handler reproducing misbehaving servers on demand."""

    def __init__(
        self,
        content: bytes = LIMERICK,
        *,
        byte_interval: float = BYTE_INTERVAL,
        dump_stream: TextIO | None = None,
    ) -> None:
        self.content = content
        self.byte_interval = byte_interval
        self.dump_stream = dump_stream
        self.request_ids = Counter()

    def __call__(self, request: Request, response: Response) -> None:
        ctx = tag_request(request.ctx, self.request_ids)

        try:
            dump = request.dump()
        except RequestError as e:
            log.error(ctx, "dumping request", error=e)
            response.error(f"bad request: {e}", 400)
            return

        stream = self.dump_stream if self.dump_stream is not None else sys.stdout
        print(f"---\n{dump.decode('latin-1')}\n---\n", file=stream, flush=True)

        action = request.query_params.get("action", "")
        log.info(ctx, "handling", action=action)

        parsed = Action.parse(action)
        if parsed is Action.NONE:
            serve_content(request, response, "limerick.txt", time.time(), self.content)
        elif parsed is Action.HANG:
            self.hang(ctx)
        elif parsed is Action.CLOSE:
            try:
                self.close_conn(ctx, response)
            except HijackError as e:
                log.error(ctx, "closing connection", error=e)
                response.error("can't properly close connection", 500)
        elif parsed is Action.SLOW_WRITE:
            try:
                self.slow_write(ctx, request, response)
            except HijackError as e:
                log.error(ctx, "writing response", error=e)
                response.error("can't properly write response", 500)
        else:
            response.error("unknown action", 400)

    def hang(self, ctx: Context) -> None:
        """Write nothing until the peer goes away or the server shuts down."""
        reason = ctx.wait()
        log.debug(ctx, "hang released", reason=reason)

    def close_conn(self, ctx: Context, response: Response) -> None:
        raw = response.hijack()
        raw.close()
        log.debug(ctx, "connection closed")

    def slow_write(self, ctx: Context, request: Request, response: Response) -> None:
        log.info(ctx, "hijacking connection")
        raw = response.hijack()
        try:
            log.info(ctx, "writing slow response")
            payload = slow_response(request.host, self.content)
            for i in range(len(payload)):
                sleep(self.byte_interval)
                raw.write(payload[i : i + 1])
                raw.flush()
        except OSError as e:
            log.error(ctx, "writing response", error=e)
        finally:
            raw.close()
