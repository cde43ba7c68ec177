from __future__ import annotations

import asyncio
import contextlib
import socket

import pytest

from tapproxy import certs
from tapproxy import options
from tapproxy.utils import data

try:
    s = socket.socket(socket.AF_INET6, socket.SOCK_STREAM)
    s.bind(("::1", 0))
    s.close()
except OSError:
    no_ipv6 = True
else:
    no_ipv6 = False

skip_no_ipv6 = pytest.mark.skipif(no_ipv6, reason="Host has no IPv6 support")


@pytest.fixture()
def tdata():
    return data.Data(__name__)


@pytest.fixture(scope="session")
def confdir(tmp_path_factory):
    """A configuration directory with a freshly generated root CA."""
    path = tmp_path_factory.mktemp("confdir")
    certs.generate_root_ca(path, options.CONF_BASENAME, options.KEY_SIZE)
    return path


@pytest.fixture()
def certstore(confdir):
    return certs.CertStore.from_store(confdir, options.CONF_BASENAME)


@contextlib.asynccontextmanager
async def tcp_server(handle, host: str = "127.0.0.1"):
    """
    Run `handle(reader, writer)` for every connection to a loopback server.
    Yields the server address.
    """
    server = await asyncio.start_server(handle, host, 0)
    try:
        yield server.sockets[0].getsockname()[:2]
    finally:
        server.close()


class AsyncLogCaptureFixture:
    def __init__(self, caplog: pytest.LogCaptureFixture):
        self.caplog = caplog

    def set_level(self, level: int | str, logger: str | None = None) -> None:
        self.caplog.set_level(level, logger)

    async def await_log(self, text, timeout=2):
        await asyncio.sleep(0)
        for i in range(int(timeout / 0.01)):
            if text in self.caplog.text:
                return True
            else:
                await asyncio.sleep(0.01)
        raise AssertionError(f"Did not find {text!r} in log:\n{self.caplog.text}")

    def clear(self) -> None:
        self.caplog.clear()


@pytest.fixture
def caplog_async(caplog):
    return AsyncLogCaptureFixture(caplog)
