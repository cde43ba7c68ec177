import time

import pytest

from tapproxy import exceptions
from tapproxy.proxy.throttle import ThrottleGroup


def test_invalid_rate():
    with pytest.raises(exceptions.OptionsError):
        ThrottleGroup(0)
    with pytest.raises(exceptions.OptionsError):
        ThrottleGroup.from_kbps(0)


def test_from_kbps():
    t = ThrottleGroup.from_kbps(2)
    assert t.rate == 2048
    assert repr(t) == "ThrottleGroup(2.0k/s)"


async def test_throttle_splits_chunks():
    t = ThrottleGroup(1024)

    async def chunks():
        yield b"x" * 1500
        yield b"y" * 10

    out = [c async for c in t.throttle(chunks())]
    assert b"".join(out) == b"x" * 1500 + b"y" * 10
    assert max(len(c) for c in out) <= 1024


async def test_throttle_rate():
    t = ThrottleGroup(10_000)
    # the initial burst is free
    await t.consume(10_000)
    start = time.monotonic()
    await t.consume(2_000)
    assert time.monotonic() - start >= 0.15
