# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
import time

from screenshare.cancellation import CancelToken


def test_wait_times_out_when_not_cancelled():
    async def scenario():
        token = CancelToken()
        started = time.monotonic()
        result = await token.wait(0.05)
        return result, time.monotonic() - started

    result, elapsed = asyncio.run(scenario())

    assert result is False
    assert elapsed >= 0.04


def test_wait_returns_immediately_when_cancelled():
    async def scenario():
        token = CancelToken.already_cancelled()
        started = time.monotonic()
        result = await token.wait(10)
        return result, time.monotonic() - started

    result, elapsed = asyncio.run(scenario())

    assert result is True
    assert elapsed < 0.5


def test_cancel_wakes_waiter():
    async def scenario():
        token = CancelToken()
        waiter = asyncio.create_task(token.wait(10))
        await asyncio.sleep(0.01)
        token.cancel()
        return await asyncio.wait_for(waiter, 1)

    assert asyncio.run(scenario()) is True


def test_child_follows_parent():
    parent = CancelToken()
    child = parent.child()

    parent.cancel()

    assert child.cancelled


def test_child_cancel_does_not_cancel_parent():
    parent = CancelToken()
    child = parent.child()

    child.cancel()

    assert child.cancelled
    assert not parent.cancelled


def test_child_of_cancelled_parent_starts_cancelled():
    assert CancelToken.already_cancelled().child().cancelled


def test_cancel_is_idempotent():
    token = CancelToken()
    token.cancel()
    token.cancel()

    assert token.cancelled


def test_cancelled_child_is_released_by_parent():
    parent = CancelToken()
    for _ in range(5):
        parent.child().cancel()

    assert parent._children == []  # pylint: disable=protected-access
    assert not parent.cancelled


def test_parent_cancel_reaches_remaining_children():
    parent = CancelToken()
    finished = parent.child()
    running = parent.child()
    finished.cancel()

    parent.cancel()

    assert running.cancelled
    assert parent._children == []  # pylint: disable=protected-access
