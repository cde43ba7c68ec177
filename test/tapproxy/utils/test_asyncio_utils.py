import asyncio

from tapproxy.utils import asyncio_utils


async def ttask():
    await asyncio.sleep(0)
    return 42


async def test_create_task():
    t = asyncio_utils.create_task(
        ttask(), name="ttask", keep_ref=True, client=("127.0.0.1", 42313)
    )
    assert t.get_name().startswith("ttask")
    assert t.client == ("127.0.0.1", 42313)
    assert t in asyncio_utils._KEEP_ALIVE
    assert await t == 42
    await asyncio.sleep(0)
    assert t not in asyncio_utils._KEEP_ALIVE
