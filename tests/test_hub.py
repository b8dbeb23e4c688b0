"""Tests for the greenlet + selectors hub, real sockets, no mocks."""

from __future__ import annotations

import socket
import threading
import time
from collections.abc import Generator

import greenlet
import pytest

from badserv.hub import Hub, get_hub, sleep


# ---------------------------------------------------------------------------
# Echo server built on the hub
# ---------------------------------------------------------------------------


def _echo(hub: Hub, conn: socket.socket) -> None:
    try:
        while True:
            data = hub.recv(conn, 4096)
            if not data:
                break
            hub.sendall(conn, data)
    except OSError:
        pass
    finally:
        conn.close()


def _acceptor(hub: Hub, listen_sock: socket.socket) -> None:
    while hub.running:
        try:
            conn, _ = hub.accept(listen_sock)
        except OSError:
            break
        hub.spawn(_echo, hub, conn)


@pytest.fixture()
def echo_server() -> Generator[tuple[Hub, socket.socket]]:
    """Start an echo server on a random port, hub in a background thread."""
    hub = Hub()
    listen_sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listen_sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    listen_sock.setblocking(False)
    listen_sock.bind(("127.0.0.1", 0))
    listen_sock.listen(128)

    ready = threading.Event()

    def run() -> None:
        ready.set()
        hub.run(lambda: _acceptor(hub, listen_sock))

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    ready.wait(timeout=5)
    # Small delay to ensure hub loop is running
    time.sleep(0.05)

    yield hub, listen_sock

    hub.stop()
    thread.join(timeout=5)
    listen_sock.close()


def _connect(listen_sock: socket.socket) -> socket.socket:
    addr: tuple[str, int] = listen_sock.getsockname()
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.settimeout(3.0)
    sock.connect(addr)
    return sock


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


def test_single_echo(echo_server: tuple[Hub, socket.socket]) -> None:
    """Send data on one connection, assert it comes back."""
    _, listen_sock = echo_server
    client = _connect(listen_sock)
    client.sendall(b"hello")
    assert client.recv(4096) == b"hello"
    client.close()


def test_concurrent_echo(echo_server: tuple[Hub, socket.socket]) -> None:
    """Several open connections are served by one hub thread."""
    _, listen_sock = echo_server
    clients = [_connect(listen_sock) for _ in range(10)]
    for i, client in enumerate(clients):
        client.sendall(f"msg-{i}".encode())
    for i, client in enumerate(clients):
        assert client.recv(4096) == f"msg-{i}".encode()
        client.close()


def test_large_payload_echo(echo_server: tuple[Hub, socket.socket]) -> None:
    """Partial sends and recvs are reassembled."""
    _, listen_sock = echo_server
    client = _connect(listen_sock)
    payload = b"X" * (512 * 1024)

    received = bytearray()

    def reader() -> None:
        while len(received) < len(payload):
            chunk = client.recv(65536)
            if not chunk:
                break
            received.extend(chunk)

    t = threading.Thread(target=reader)
    t.start()
    client.sendall(payload)
    t.join(timeout=10)
    assert bytes(received) == payload
    client.close()


def test_sleep_ordering() -> None:
    """Timers fire in deadline order, not spawn order."""
    hub = Hub()
    order: list[str] = []

    def sleeper(name: str, seconds: float) -> None:
        hub.sleep(seconds)
        order.append(name)
        if len(order) == 2:
            hub.stop()

    hub.spawn(sleeper, "long", 0.05)
    hub.spawn(sleeper, "short", 0.01)
    hub.run()
    assert order == ["short", "long"]


def test_module_sleep_is_cooperative() -> None:
    """badserv.hub.sleep yields to other greenlets while a hub runs."""
    hub = Hub()
    events: list[str] = []

    def slow() -> None:
        sleep(0.05)
        events.append("slow")
        hub.stop()

    def fast() -> None:
        events.append("fast")

    hub.spawn(slow)
    hub.spawn(fast)
    hub.run()
    assert events == ["fast", "slow"]


def test_sleep_without_hub_blocks() -> None:
    assert get_hub() is None
    start = time.monotonic()
    sleep(0.02)
    assert time.monotonic() - start >= 0.02


def test_sleep_negative() -> None:
    with pytest.raises(ValueError):
        sleep(-1)


def test_wait_readable_timeout() -> None:
    """A wait with a timeout resumes with False when nothing arrives."""
    hub = Hub()
    a, b = socket.socketpair()
    a.setblocking(False)
    results: list[bool] = []

    def waiter() -> None:
        results.append(hub.wait_readable(a.fileno(), timeout=0.05))
        hub.stop()

    hub.spawn(waiter)
    hub.run()
    assert results == [False]
    a.close()
    b.close()


def test_recv_timeout_raises() -> None:
    hub = Hub()
    a, b = socket.socketpair()
    a.setblocking(False)
    errors: list[BaseException] = []

    def waiter() -> None:
        try:
            hub.recv(a, 16, timeout=0.02)
        except TimeoutError as e:
            errors.append(e)
        hub.stop()

    hub.spawn(waiter)
    hub.run()
    assert len(errors) == 1
    a.close()
    b.close()


def test_abort_resumes_waiter() -> None:
    """abort() wakes a parked reader with False."""
    hub = Hub()
    a, b = socket.socketpair()
    a.setblocking(False)
    results: list[bool] = []

    def waiter() -> None:
        results.append(hub.wait_readable(a.fileno()))
        hub.stop()

    def aborter() -> None:
        hub.sleep(0.01)
        hub.abort(a.fileno())

    hub.spawn(waiter)
    hub.spawn(aborter)
    hub.run()
    assert results == [False]
    a.close()
    b.close()


def test_reader_and_writer_on_same_fd() -> None:
    """A watcher for reads does not block a writer on the same socket."""
    hub = Hub()
    a, b = socket.socketpair()
    a.setblocking(False)
    seen: list[str] = []

    def writer() -> None:
        hub.watch_readable(a.fileno(), lambda ok: seen.append("readable"))
        assert hub.wait_writable(a.fileno(), timeout=1.0)
        hub.sendall(a, b"ping")
        seen.append("sent")
        hub.unwatch_readable(a.fileno())
        hub.stop()

    hub.spawn(writer)
    hub.run()
    assert seen == ["sent"]
    assert b.recv(16) == b"ping"
    a.close()
    b.close()


def test_crashing_greenlet_does_not_stop_hub() -> None:
    hub = Hub()
    done: list[bool] = []

    def boom() -> None:
        raise RuntimeError("boom")

    def survivor() -> None:
        hub.sleep(0.01)
        done.append(True)
        hub.stop()

    hub.spawn(boom)
    hub.spawn(survivor)
    hub.run()
    assert done == [True]


def test_stop_callbacks_run_once() -> None:
    hub = Hub()
    calls: list[str] = []
    hub.add_stop_callback(lambda: calls.append("stopped"))
    hub.spawn(hub.stop)
    hub.run()
    assert calls == ["stopped"]
    assert get_hub() is None


def test_spawned_greenlets_are_children_of_hub() -> None:
    hub = Hub()
    parents: list[greenlet.greenlet | None] = []

    def child() -> None:
        parents.append(greenlet.getcurrent().parent)
        hub.stop()

    hub.spawn(child)
    hub.run()
    assert parents == [hub.greenlet]


def test_spawn_passes_arguments() -> None:
    hub = Hub()
    seen: list[tuple[str, int]] = []

    def task(name: str, n: int) -> None:
        seen.append((name, n))
        hub.stop()

    hub.spawn(task, "worker", 3)
    hub.run()
    assert seen == [("worker", 3)]


def test_run_main_starts_acceptor_like_task() -> None:
    """The function given to run() is started with no arguments."""
    hub = Hub()
    started: list[bool] = []

    def main() -> None:
        started.append(True)
        hub.stop()

    hub.run(main)
    assert started == [True]


def test_cancelled_timers_do_not_pile_up() -> None:
    """Cancelled timers behind a long-lived one are purged from the heap."""
    hub = Hub()
    hub.call_later(3600, lambda: None)
    for i in range(1000):
        timer = hub.call_later(3600 + i, lambda: None)
        timer.cancel()
        assert timer.callback is None
    assert len(hub._timers) <= 200
    assert sum(not entry[2].cancelled for entry in hub._timers) == 1


def test_cancel_after_fire_is_harmless() -> None:
    hub = Hub()
    fired: list[bool] = []

    def main() -> None:
        timer = hub.call_later(0.0, lambda: fired.append(True))
        hub.sleep(0.01)
        timer.cancel()
        counts.append(hub._cancelled_timers)
        hub.stop()

    counts: list[int] = []
    hub.run(main)
    assert fired == [True]
    assert counts == [0]
