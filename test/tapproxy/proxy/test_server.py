import asyncio
import json
import sys

import pytest

from tapproxy import exceptions
from tapproxy import options
from tapproxy.context import ResponseInfo
from tapproxy.net.http.headers import Headers
from tapproxy.proxy import admin
from tapproxy.proxy.dispatcher import UNKNOWN_DESTINATION
from tapproxy.proxy.server import ProxyServer
from tapproxy.proxy.server import ProxyState
from tapproxy.proxy.server import SocketPool
from tapproxy.rules import Rule

from ...conftest import tcp_server
from .tservers import client_context
from .tservers import connect_tunnel
from .tservers import get_logs
from .tservers import read_response
from .tservers import request
from .tservers import running_proxy
from .tservers import split_response


class Synthetic(Rule):
    """Answers every request itself."""

    def __init__(self):
        self.contexts = []

    def before_send_request(self, context):
        self.contexts.append(context)
        return ResponseInfo(
            200, Headers(content_type="text/plain"), body=context.url.encode()
        )


async def echo(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
    while data := await reader.read(65536):
        writer.write(data)
        await writer.drain()
    writer.close()


def get(path: str, host: str) -> bytes:
    return f"GET {path} HTTP/1.1\r\nHost: {host}\r\nConnection: close\r\n\r\n".encode()


class TestSocketPool:
    class Dummy:
        closed = False

        def close(self):
            self.closed = True

    def test_register(self):
        pool = SocketPool()
        a, b = self.Dummy(), self.Dummy()
        with pool.register(a):
            pool.add(b)
            assert len(pool) == 2
        assert len(pool) == 1
        assert repr(pool) == "SocketPool(1 sockets)"

    def test_close_all(self):
        pool = SocketPool()
        socks = [self.Dummy() for _ in range(3)]
        for s in socks:
            pool.add(s)
        pool.remove(-1)
        pool.close_all()
        assert all(s.closed for s in socks)
        assert len(pool) == 0


class TestLifecycle:
    async def test_missing_ca(self, tmp_path):
        proxy = ProxyServer(options.Options(confdir=str(tmp_path), listen_port=0))
        with pytest.raises(exceptions.OptionsError, match="tapproxy-ca --generate"):
            await proxy.start()
        assert proxy.state is ProxyState.INIT

    async def test_https_requires_hostname(self, confdir):
        proxy = ProxyServer(
            options.Options(confdir=str(confdir), listen_port=0, proxy_type="https")
        )
        with pytest.raises(exceptions.OptionsError, match="proxy_hostname"):
            await proxy.start()

    async def test_start_twice(self, confdir):
        async with running_proxy(confdir) as proxy:
            assert proxy.state is ProxyState.READY
            assert proxy.port != 0
            with pytest.raises(exceptions.ProxyStateError):
                await proxy.start()
        assert proxy.state is ProxyState.CLOSED
        with pytest.raises(exceptions.ProxyStateError):
            await proxy.start()

    async def test_port_in_use(self, confdir):
        async with running_proxy(confdir) as first:
            with pytest.raises(exceptions.ListenerError, match="failed to listen"):
                async with running_proxy(confdir, listen_port=first.port):
                    pass

    async def test_close(self, confdir, caplog_async):
        caplog_async.set_level("INFO")
        async with running_proxy(confdir) as proxy:
            await caplog_async.await_log("proxy listening at 127.0.0.1:")
            reader, writer = await asyncio.open_connection("127.0.0.1", proxy.port)
            await asyncio.sleep(0.1)
            assert len(proxy.resources.socket_pool) == 1
            await proxy.close()
            await proxy.close()
            await asyncio.wait_for(proxy.wait_closed(), 1)
            assert await asyncio.wait_for(reader.read(), 1) == b""
            writer.close()
        assert "Proxy closed." in caplog_async.caplog.text

    async def test_independent_instances(self, confdir):
        a, b = Synthetic(), Synthetic()
        async with running_proxy(confdir, a) as p1, running_proxy(confdir, b) as p2:
            assert p1.port != p2.port
            await request(p1.port, get("http://one.test/", "one.test"))
            await request(p2.port, get("http://two.test/", "two.test"))
            assert len(p1.recorder) == len(p2.recorder) == 1
        assert [c.url for c in a.contexts] == ["http://one.test/"]
        assert [c.url for c in b.contexts] == ["http://two.test/"]


class TestDispatch:
    async def test_origin_form(self, confdir):
        rule = Synthetic()
        async with running_proxy(confdir, rule) as proxy:
            data = await request(proxy.port, get("/page?x=1", "example.test"))
        assert split_response(data)[2] == b"http://example.test/page?x=1"

    async def test_request_to_proxy_itself(self, confdir):
        async with running_proxy(confdir, Synthetic()) as proxy:
            data = await request(proxy.port, get("/", f"127.0.0.1:{proxy.port}"))
        status, _, body = split_response(data)
        assert status.startswith(b"HTTP/1.1 400")
        assert body == UNKNOWN_DESTINATION

    async def test_malformed_request(self, confdir):
        async with running_proxy(confdir) as proxy:
            data = await request(proxy.port, b"NOT HTTP\r\n\r\n")
        assert data.startswith(b"HTTP/1.1 400")

    async def test_keep_alive(self, confdir):
        async with running_proxy(confdir, Synthetic()) as proxy:
            reader, writer = await asyncio.open_connection("127.0.0.1", proxy.port)
            writer.write(b"GET http://a.test/ HTTP/1.1\r\nHost: a.test\r\n\r\n")
            writer.write(get("http://b.test/", "b.test"))
            data = await asyncio.wait_for(reader.read(), 5)
            writer.close()
        assert data.count(b"HTTP/1.1 200") == 2
        assert data.endswith(b"http://b.test/")


class TestConnect:
    async def test_tunnel(self, confdir):
        calls = []

        class NoIntercept(Rule):
            def is_deal_connect(self, context):
                calls.append(context.authority)
                return False

        async with tcp_server(echo) as (_, port):
            async with running_proxy(confdir, NoIntercept()) as proxy:
                reader, writer, established = await connect_tunnel(
                    proxy.port, f"127.0.0.1:{port}"
                )
                assert established == b"HTTP/1.1 200 OK\r\n\r\n"
                payload = bytes(range(256))
                writer.write(payload)
                await writer.drain()
                assert await reader.readexactly(256) == payload
                writer.write_eof()
                assert await asyncio.wait_for(reader.read(), 5) == b""
                writer.close()
                [log] = await get_logs(proxy.port)
                assert log["method"] == "CONNECT"
                assert log["url"] == f"https://127.0.0.1:{port}"
                assert log["status_code"] == 200
        assert calls == [f"127.0.0.1:{port}"]

    async def test_connect_failure(self, confdir):
        errors = []

        class OnConnectError(Rule):
            def on_connect_error(self, context, error):
                errors.append((context.authority, error))

        server = await asyncio.start_server(echo, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()

        async with running_proxy(
            confdir, OnConnectError(), force_no_intercept=True
        ) as proxy:
            reader, writer, established = await connect_tunnel(
                proxy.port, f"127.0.0.1:{port}"
            )
            writer.write(b"\x16\x03\x01")
            await writer.drain()
            data = await asyncio.wait_for(reader.read(), 5)
            writer.close()
            [log] = proxy.recorder.get_logs()
        assert established.startswith(b"HTTP/1.1 200")
        assert log["method"] == "CONNECT"
        assert log["status_code"] == 502
        assert "Cannot connect" in log["error"]
        assert data.startswith(b"HTTP/1.1 502\r\n")
        assert b"Proxy-Error: true\r\n" in data
        assert len(errors) == 1
        assert errors[0][0] == f"127.0.0.1:{port}"
        assert isinstance(errors[0][1], exceptions.UpstreamError)

    async def test_invalid_target(self, confdir):
        async with running_proxy(confdir) as proxy:
            data = await request(
                proxy.port, b"CONNECT example.com:port HTTP/1.1\r\nHost: x\r\n\r\n"
            )
        assert data.startswith(b"HTTP/1.1 400")

    @pytest.mark.skipif(
        sys.version_info < (3, 11), reason="StreamWriter.start_tls requires Python 3.11"
    )
    async def test_intercept(self, confdir):
        rule = Synthetic()
        async with running_proxy(confdir, rule) as proxy:
            reader, writer, established = await connect_tunnel(
                proxy.port, "example.test:443"
            )
            await writer.start_tls(
                client_context(confdir), server_hostname="example.test"
            )
            writer.write(get("/secure", "example.test"))
            await writer.drain()
            data = await read_response(reader)
            writer.close()
        status, _, body = split_response(data)
        assert status == b"HTTP/1.1 200 OK"
        assert body == b"https://example.test/secure"
        assert rule.contexts[0].is_tls

    async def test_https_proxy_type(self, confdir):
        rule = Synthetic()
        async with running_proxy(
            confdir, rule, proxy_type="https", proxy_hostname="proxy.test"
        ) as proxy:
            reader, writer = await asyncio.open_connection(
                "127.0.0.1",
                proxy.port,
                ssl=client_context(confdir),
                server_hostname="proxy.test",
            )
            writer.write(get("http://example.test/", "example.test"))
            await writer.drain()
            data = await read_response(reader)
            writer.close()
        assert split_response(data)[2] == b"http://example.test/"


class TestAdmin:
    def test_safe_join(self, tmp_path):
        assert admin.safe_join(tmp_path, "a/b.js") == tmp_path.resolve() / "a" / "b.js"
        assert admin.safe_join(tmp_path, "/index.html") == tmp_path.resolve() / "index.html"
        with pytest.raises(ValueError):
            admin.safe_join(tmp_path, "../secret")

    def test_mime_type(self):
        assert admin.get_mime_type("index.html") == "text/html"
        assert admin.get_mime_type("noextension") == "text/plain"

    async def test_logs(self, confdir):
        async with running_proxy(confdir, Synthetic()) as proxy:
            for host in ("a.test", "b.test"):
                await request(proxy.port, get(f"http://{host}/", host))
            data = await request(
                proxy.port, get("/__tapproxy/api/logs", f"127.0.0.1:{proxy.port}")
            )
            status, headers, body = split_response(data)
            assert headers["content-type"] == "application/json"
            logs = json.loads(body)
            assert [log["host"] for log in logs] == ["b.test", "a.test"]

            data = await request(
                proxy.port,
                get(f"/__tapproxy/api/log?id={logs[1]['id']}", "localhost"),
            )
            assert json.loads(split_response(data)[2])["url"] == "http://a.test/"

            data = await request(proxy.port, get("/__tapproxy/api/log?id=999", "x"))
            assert json.loads(split_response(data)[2]) == {}

    async def test_static(self, confdir, tmp_path):
        (tmp_path / "index.html").write_text("<h1>logs</h1>")
        (tmp_path / "app.js").write_text("let x = 1;")
        async with running_proxy(confdir, web_root=str(tmp_path)) as proxy:
            data = await request(proxy.port, get("/__tapproxy/web/", "x"))
            status, headers, body = split_response(data)
            assert status == b"HTTP/1.1 200 OK"
            assert headers["content-type"] == "text/html"
            assert body == b"<h1>logs</h1>"

            data = await request(proxy.port, get("/__tapproxy/web/app.js", "x"))
            assert split_response(data)[2] == b"let x = 1;"

            data = await request(proxy.port, get("/__tapproxy/web/missing.js", "x"))
            status, _, body = split_response(data)
            assert status.startswith(b"HTTP/1.1 404")
            assert body == b"__tapproxy web"

            data = await request(proxy.port, get("/__tapproxy/web/%2e%2e/x", "x"))
            assert split_response(data)[0].startswith(b"HTTP/1.1 404")

    async def test_bundled_ui(self, confdir):
        async with running_proxy(confdir) as proxy:
            data = await request(proxy.port, get("/__tapproxy/web/index.html", "x"))
        status, headers, _ = split_response(data)
        assert status == b"HTTP/1.1 200 OK"
        assert headers["content-type"] == "text/html"

    async def test_unknown(self, confdir):
        async with running_proxy(confdir) as proxy:
            data = await request(proxy.port, get("/__tapproxy/nope", "x"))
        status, _, body = split_response(data)
        assert status.startswith(b"HTTP/1.1 404")
        assert body == b"__tapproxy"

    async def test_reload_rule(self, confdir, tmp_path):
        path = tmp_path / "myrule.py"
        path.write_text(
            "class First:\n    def summary(self):\n        return 'first'\n\nrule = First()\n"
        )
        o = options.Options(
            listen_host="127.0.0.1", listen_port=0, confdir=str(confdir), rule=str(path)
        )
        proxy = ProxyServer(o)
        await proxy.start()
        try:
            assert await proxy.rules.summary() == "first"
            path.write_text(
                "class Second:\n    def summary(self):\n        return 'second'\n\nrule = Second()\n"
            )
            data = await request(proxy.port, get("/__tapproxy/api/reload_rule", "x"))
            assert split_response(data)[2] == b"refresh user_rule"
            assert await proxy.rules.summary() == "second"
            assert proxy.rules.version == 2

            path.write_text("raise RuntimeError()\n")
            data = await request(proxy.port, get("/__tapproxy/api/reload_rule", "x"))
            assert split_response(data)[0] == b"HTTP/1.1 200 OK"
            assert await proxy.rules.summary() == "second"
        finally:
            await proxy.close()

    async def test_close(self, confdir):
        async with running_proxy(confdir) as proxy:
            data = await request(proxy.port, get("/__tapproxy/api/close", "x"))
            assert split_response(data)[2] == b"__tapproxy close"
            await asyncio.wait_for(proxy.wait_closed(), 5)
            assert proxy.state is ProxyState.CLOSED
