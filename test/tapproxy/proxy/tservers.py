"""
Upstream servers and a proxy factory for end-to-end tests.
"""
from __future__ import annotations

import asyncio
import contextlib
import functools
import json
import ssl
from dataclasses import dataclass
from dataclasses import field

import wsproto
import wsproto.events

from tapproxy import certs
from tapproxy import options
from tapproxy.proxy.server import ProxyServer
from tapproxy.recorder import Recorder
from tapproxy.rules import RuleHolder


@dataclass
class UpstreamRequest:
    head: bytes
    body: bytes

    @property
    def request_line(self) -> bytes:
        return self.head.split(b"\r\n", 1)[0]

    def header(self, name: str) -> str | None:
        for line in self.head.split(b"\r\n")[1:]:
            k, _, v = line.decode("latin-1").partition(":")
            if k.strip().lower() == name.lower():
                return v.strip()
        return None


@dataclass
class HttpUpstream:
    """
    Answers every request with a canned raw response and closes the connection.
    """

    response: bytes
    requests: list[UpstreamRequest] = field(default_factory=list)
    address: tuple = ()

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        try:
            head = await reader.readuntil(b"\r\n\r\n")
        except asyncio.IncompleteReadError:
            writer.close()
            return
        req = UpstreamRequest(head, b"")
        length = req.header("content-length")
        if length:
            req.body = await reader.readexactly(int(length))
        elif "chunked" in (req.header("transfer-encoding") or ""):
            while True:
                size = int((await reader.readline()).strip(), 16)
                chunk = await reader.readexactly(size + 2)
                if size == 0:
                    break
                req.body += chunk[:-2]
        self.requests.append(req)
        writer.write(self.response)
        await writer.drain()
        writer.close()

    @property
    def authority(self) -> str:
        return f"{self.address[0]}:{self.address[1]}"


def response(
    body: bytes = b"hello",
    status: str = "200 OK",
    headers: list[tuple[str, str]] | None = None,
) -> bytes:
    headers = headers if headers is not None else [("Content-Type", "text/plain")]
    lines = [f"HTTP/1.1 {status}"]
    lines += [f"{k}: {v}" for k, v in headers]
    if not any(k.lower() in ("content-length", "transfer-encoding") for k, _ in headers):
        lines.append(f"Content-Length: {len(body)}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode() + body


@contextlib.asynccontextmanager
async def http_upstream(resp: bytes):
    upstream = HttpUpstream(resp)
    server = await asyncio.start_server(upstream.handle, "127.0.0.1", 0)
    upstream.address = server.sockets[0].getsockname()[:2]
    try:
        yield upstream
    finally:
        server.close()


async def ws_echo(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    accept_delay: float = 0,
):
    """
    A WebSocket echo server. The message "drop" aborts the TCP connection,
    "close" closes the WebSocket with code 1000. The handshake is answered
    after `accept_delay` seconds.
    """
    ws = wsproto.WSConnection(wsproto.ConnectionType.SERVER)
    while True:
        data = await reader.read(65536)
        ws.receive_data(data or None)
        for event in ws.events():
            if isinstance(event, wsproto.events.Request):
                if accept_delay:
                    await asyncio.sleep(accept_delay)
                writer.write(ws.send(wsproto.events.AcceptConnection()))
            elif isinstance(event, wsproto.events.TextMessage):
                if event.data == "drop":
                    writer.transport.abort()
                    return
                if event.data == "close":
                    writer.write(
                        ws.send(wsproto.events.CloseConnection(code=1000, reason="bye"))
                    )
                else:
                    writer.write(ws.send(wsproto.events.TextMessage(data=event.data)))
            elif isinstance(event, wsproto.events.CloseConnection):
                if ws.state is wsproto.ConnectionState.REMOTE_CLOSING:
                    writer.write(ws.send(event.response()))
                await writer.drain()
                writer.close()
                return
        await writer.drain()
        if not data:
            writer.close()
            return


@contextlib.asynccontextmanager
async def ws_upstream(accept_delay: float = 0):
    server = await asyncio.start_server(
        functools.partial(ws_echo, accept_delay=accept_delay), "127.0.0.1", 0
    )
    try:
        yield server.sockets[0].getsockname()[:2]
    finally:
        server.close()


@contextlib.asynccontextmanager
async def running_proxy(confdir, rule=None, **opts):
    opts = {"listen_host": "127.0.0.1", "listen_port": 0, **opts}
    o = options.Options(confdir=str(confdir), **opts)
    proxy = ProxyServer(o, rules=RuleHolder(rule), recorder=Recorder())
    await proxy.start()
    try:
        yield proxy
    finally:
        await proxy.close()


async def request(port: int, raw: bytes) -> bytes:
    """Send a raw request to the proxy and read until the connection closes."""
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(raw)
    await writer.drain()
    data = await reader.read()
    writer.close()
    return data


def split_response(data: bytes) -> tuple[bytes, dict[str, str], bytes]:
    head, _, body = data.partition(b"\r\n\r\n")
    lines = head.decode("latin-1").split("\r\n")
    headers = {}
    for line in lines[1:]:
        k, _, v = line.partition(":")
        headers[k.strip().lower()] = v.strip()
    if "chunked" in headers.get("transfer-encoding", ""):
        body = dechunk(body)
    return lines[0].encode(), headers, body


def dechunk(data: bytes) -> bytes:
    body = b""
    while data:
        size, _, data = data.partition(b"\r\n")
        n = int(size.split(b";")[0], 16)
        if n == 0:
            break
        body += data[:n]
        data = data[n + 2 :]
    return body


async def connect_tunnel(port: int, authority: str, host: str = "127.0.0.1", **kwargs):
    reader, writer = await asyncio.open_connection(host, port, **kwargs)
    writer.write(f"CONNECT {authority} HTTP/1.1\r\nHost: {authority}\r\n\r\n".encode())
    await writer.drain()
    established = await reader.readuntil(b"\r\n\r\n")
    return reader, writer, established


async def read_response(reader: asyncio.StreamReader) -> bytes:
    """Read a single response with a Content-Length body."""
    head = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), 5)
    _, headers, _ = split_response(head)
    body = await reader.readexactly(int(headers.get("content-length", 0)))
    return head + body


def client_context(confdir) -> ssl.SSLContext:
    """Trusts the CA in `confdir`."""
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.load_verify_locations(str(certs.ca_cert_path(confdir, options.CONF_BASENAME)))
    return ctx


async def get_logs(port: int) -> list[dict]:
    data = await request(
        port,
        f"GET /__tapproxy/api/logs HTTP/1.1\r\nHost: 127.0.0.1:{port}\r\n"
        f"Connection: close\r\n\r\n".encode(),
    )
    return json.loads(split_response(data)[2])
