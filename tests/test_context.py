"""Tests for the execution context: values, immutability and cancellation."""

from __future__ import annotations

import pytest

from badserv.context import CANCELED, Context, background, with_cancel
from badserv.hub import Hub


class _Key:
    pass


class _Other:
    pass


def test_background_is_empty() -> None:
    ctx = background()
    assert ctx.value(_Key) is None
    assert not ctx.cancellable
    assert ctx.err is None


def test_with_value_does_not_mutate_parent() -> None:
    parent = background()
    child = parent.with_value(_Key, 1)
    assert child.value(_Key) == 1
    assert parent.value(_Key) is None


def test_lookup_walks_parent_chain() -> None:
    ctx = background().with_value(_Key, "a").with_value(_Other, "b")
    assert ctx.value(_Key) == "a"
    assert ctx.value(_Other) == "b"


def test_nearest_value_wins() -> None:
    ctx = background().with_value(_Key, 1).with_value(_Key, 2)
    assert ctx.value(_Key) == 2


def test_context_is_immutable() -> None:
    ctx = background().with_value(_Key, 1)
    with pytest.raises(AttributeError):
        ctx._value = 2  # type: ignore[misc]


def test_cancel_sets_err() -> None:
    ctx, cancel = with_cancel(background())
    assert not ctx.cancelled
    cancel()
    assert ctx.cancelled
    assert ctx.err == CANCELED
    cancel()  # idempotent
    assert ctx.err == CANCELED


def test_cancel_propagates_to_children() -> None:
    root, cancel_root = with_cancel(background())
    conn = root.with_value(_Key, 7)
    req, _ = with_cancel(conn)
    tagged = req.with_value(_Other, 3)

    cancel_root()
    assert conn.cancelled
    assert req.cancelled
    assert tagged.cancelled
    assert tagged.value(_Key) == 7


def test_child_cancel_does_not_touch_parent() -> None:
    root, _ = with_cancel(background())
    child, cancel_child = with_cancel(root)
    cancel_child()
    assert child.cancelled
    assert not root.cancelled


def test_cancelled_child_detaches_from_parent() -> None:
    root, _ = with_cancel(background())
    for _ in range(100):
        _, cancel = with_cancel(root)
        cancel()
    assert not root._signal.children  # type: ignore[union-attr]


def test_derive_from_cancelled_parent_is_cancelled() -> None:
    root, cancel_root = with_cancel(background())
    cancel_root()
    child, _ = with_cancel(root)
    assert child.cancelled


def test_wait_requires_cancellable_context() -> None:
    with pytest.raises(RuntimeError):
        background().wait()


def test_wait_requires_hub() -> None:
    ctx, _ = with_cancel(background())
    with pytest.raises(RuntimeError):
        ctx.wait()


def test_wait_returns_after_cancel() -> None:
    """A parked greenlet resumes when another greenlet cancels the context."""
    hub = Hub()
    ctx, cancel = with_cancel(background())
    results: list[str] = []

    def waiter() -> None:
        results.append(ctx.with_value(_Key, 1).wait())
        hub.stop()

    def canceller() -> None:
        hub.sleep(0.02)
        results.append("cancelling")
        cancel()

    hub.spawn(waiter)
    hub.spawn(canceller)
    hub.run()
    assert results == ["cancelling", CANCELED]


def test_wait_on_already_cancelled_returns_immediately() -> None:
    hub = Hub()
    ctx, cancel = with_cancel(background())
    cancel()
    results: list[str] = []

    def waiter() -> None:
        results.append(ctx.wait())
        hub.stop()

    hub.spawn(waiter)
    hub.run()
    assert results == [CANCELED]


def test_many_waiters_released_together() -> None:
    hub = Hub()
    root, cancel = with_cancel(background())
    released: list[int] = []

    def waiter(i: int) -> None:
        req, _ = with_cancel(root)
        req.wait()
        released.append(i)
        if len(released) == 5:
            hub.stop()

    for i in range(5):
        hub.spawn(waiter, i)

    def canceller() -> None:
        hub.sleep(0.01)
        cancel()

    hub.spawn(canceller)
    hub.run()
    assert sorted(released) == [0, 1, 2, 3, 4]


def test_context_type() -> None:
    assert isinstance(background(), Context)
