import asyncio
import ssl

import pytest

from tapproxy import certs
from tapproxy import exceptions
from tapproxy import options
from tapproxy.proxy import tls_pool


def client_context(confdir) -> ssl.SSLContext:
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.load_verify_locations(str(certs.ca_cert_path(confdir, options.CONF_BASENAME)))
    return ctx


async def echo_upper(stream):
    data = await stream.read()
    stream.write(data.upper())
    await stream.drain()


@pytest.fixture
async def pool(certstore):
    p = tls_pool.SharedTlsPool(certs.CertProvider(certstore), echo_upper)
    yield p
    p.close()


async def roundtrip(confdir, address, server_hostname) -> bytes:
    reader, writer = await asyncio.open_connection(
        *address, ssl=client_context(confdir), server_hostname=server_hostname
    )
    writer.write(b"hello")
    await writer.drain()
    data = await reader.read(100)
    writer.close()
    return data


async def test_one_listener_for_hostnames(pool, confdir):
    results = await asyncio.gather(
        pool.get_server("example.com"),
        pool.get_server("example.com"),
        pool.get_server("other.example.org"),
    )
    assert len(set(results)) == 1
    assert list(pool.listeners) == [tls_pool.SNI_KEY]

    address = results[0]
    assert address[0] == "127.0.0.1"
    assert await roundtrip(confdir, address, "example.com") == b"HELLO"
    assert await roundtrip(confdir, address, "other.example.org") == b"HELLO"


async def test_ip_listener(pool, confdir):
    a, b = await asyncio.gather(
        pool.get_server("10.1.2.3"),
        pool.get_server("10.1.2.3"),
    )
    assert a == b
    assert "10.1.2.3" in pool.listeners
    assert a != await pool.get_server("example.com")
    assert await roundtrip(confdir, a, "10.1.2.3") == b"HELLO"


async def test_no_sni(pool, caplog_async):
    caplog_async.set_level("INFO")
    address = await pool.get_server("example.com")
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    with pytest.raises(OSError):
        await asyncio.open_connection(*address, ssl=ctx)
    await caplog_async.await_log("did not send a server name")


async def test_issue_failure_registers_nothing():
    class FailingProvider:
        async def issue(self, host):
            raise exceptions.CertificateIssueError(f"no cert for {host}")

    pool = tls_pool.SharedTlsPool(FailingProvider(), echo_upper)
    with pytest.raises(exceptions.CertificateIssueError):
        await pool.get_server("10.0.0.1")
    assert pool.listeners == {}
    # the failure is not cached
    with pytest.raises(exceptions.CertificateIssueError):
        await pool.get_server("10.0.0.1")


async def test_bind_failure(pool, monkeypatch):
    async def start_server(*args, **kwargs):
        raise OSError("address in use")

    monkeypatch.setattr(asyncio, "start_server", start_server)
    with pytest.raises(exceptions.ListenerError, match="address in use"):
        await pool.get_server("example.com")
    assert pool.listeners == {}


async def test_close(pool):
    await pool.get_server("example.com")
    await pool.get_server("10.1.2.3")
    assert len(pool.listeners) == 2
    assert repr(pool) == "SharedTlsPool(2 listeners)"
    pool.close()
    assert pool.listeners == {}


async def test_listener_binds_os_assigned_port(pool, monkeypatch):
    calls = []
    start_server = asyncio.start_server

    async def recording_start_server(handle, host, port, **kwargs):
        calls.append((host, port))
        return await start_server(handle, host, port, **kwargs)

    monkeypatch.setattr(asyncio, "start_server", recording_start_server)
    host, port = await pool.get_server("example.com")
    assert calls == [("127.0.0.1", 0)]
    assert port != 0
    assert pool.listeners[tls_pool.SNI_KEY].port == port
