import asyncio

import pytest

from tapproxy.proxy.memoize import MemoizedTaskRunner
from tapproxy.proxy.memoize import TaskState


async def test_single_flight():
    runner = MemoizedTaskRunner()
    calls = 0
    release = asyncio.Event()

    async def producer():
        nonlocal calls
        calls += 1
        await release.wait()
        return "result"

    waiters = [asyncio.create_task(runner.run("key", producer)) for _ in range(5)]
    await asyncio.sleep(0)
    assert runner.state("key") is TaskState.PENDING
    release.set()
    assert await asyncio.gather(*waiters) == ["result"] * 5
    assert calls == 1
    assert runner.state("key") is TaskState.DONE

    # completed entries are served from cache
    assert await runner.run("key", producer) == "result"
    assert calls == 1
    assert runner.results() == ["result"]


async def test_keys_are_independent():
    runner = MemoizedTaskRunner()

    async def producer(value):
        await asyncio.sleep(0)
        return value

    a, b = await asyncio.gather(
        runner.run("a", lambda: producer(1)),
        runner.run("b", lambda: producer(2)),
    )
    assert (a, b) == (1, 2)
    assert len(runner) == 2
    assert "a" in runner
    assert "c" not in runner


async def test_failure_broadcast_and_retry():
    runner = MemoizedTaskRunner()
    calls = 0

    async def failing():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0)
        raise ValueError("boom")

    results = await asyncio.gather(
        runner.run("key", failing),
        runner.run("key", failing),
        return_exceptions=True,
    )
    assert calls == 1
    assert all(isinstance(r, ValueError) for r in results)
    assert runner.state("key") is None

    async def ok():
        return 42

    assert await runner.run("key", ok) == 42


async def test_remove():
    runner = MemoizedTaskRunner()
    calls = 0

    async def producer():
        nonlocal calls
        calls += 1
        return calls

    assert await runner.run("key", producer) == 1
    runner.remove("key")
    assert runner.state("key") is None
    assert await runner.run("key", producer) == 2
    runner.remove("does-not-exist")


async def test_cancelled_waiter_does_not_cancel_execution():
    runner = MemoizedTaskRunner()
    release = asyncio.Event()

    async def producer():
        await release.wait()
        return "done"

    first = asyncio.create_task(runner.run("key", producer))
    second = asyncio.create_task(runner.run("key", producer))
    await asyncio.sleep(0)
    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first
    release.set()
    assert await second == "done"
