from __future__ import annotations

import argparse
import logging

from badserv import log
from badserv.engine import Service
from badserv.ids import ConnTagger
from badserv.server import serve

DEFAULT_ADDR = "localhost:7080"

DESCRIPTION = (
    "badserv is a HTTP server that can be used to test HTTP clients. "
    "Client can force server to perform an action by passing 'action' query parameter."
)

EPILOG = """\
Available actions:
  - hang: server will hang on request until client closes connection
  - close: server will close connection without HTTP response
  - slow-write: server will write response slowly, byte by byte, 10 byte/s
"""


def parse_addr(text: str) -> tuple[str, int]:
    """Split ``host:port``. An empty host means every interface."""
    host, sep, port_text = text.rpartition(":")
    if not sep:
        raise argparse.ArgumentTypeError(f"missing port in address {text!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port_text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port in address {text!r}") from None
    if not 0 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"invalid port in address {text!r}")
    return host, port


def _level(text: str) -> int:
    try:
        return log.parse_level(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="badserv",
        description=DESCRIPTION,
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--http",
        dest="addr",
        type=parse_addr,
        default=parse_addr(DEFAULT_ADDR),
        metavar="ADDR",
        help=f"address to serve HTTP requests (default: {DEFAULT_ADDR})",
    )
    parser.add_argument(
        "--log-level",
        type=_level,
        default=logging.INFO,
        metavar="LEVEL",
        help="log level: debug, info, warn, error (default: info)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    log.setup_logging(args.log_level)

    host, port = args.addr
    try:
        serve(Service(), host, port, conn_context=ConnTagger())
    except OSError as e:
        log.error(None, "serving HTTP", error=e)
        return 1

    log.info(None, "Bye!")
    return 0
