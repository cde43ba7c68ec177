"""
The connection dispatcher reads HTTP/1 requests from client connections and
decides what happens to each of them:

    CONNECT          answered with 200, then spliced to a TLS pool listener
                     (intercept) or to the target itself (tunnel). A plaintext
                     request in the tunnel is served on the same connection.
    /__tapproxy/...  answered by the administrative API
    Upgrade          handed to the WebSocket relay
    anything else    run through the request/response pipeline

The same loop serves the main listener and the decrypted connections of the
TLS pool.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import urllib.parse
from typing import TYPE_CHECKING

import h11
from OpenSSL import SSL

from tapproxy import exceptions
from tapproxy import hooks
from tapproxy import rules
from tapproxy.context import ConnectContext
from tapproxy.context import split_host_header
from tapproxy.net import streams
from tapproxy.net import tls
from tapproxy.net.http.headers import Headers
from tapproxy.options import Options
from tapproxy.proxy import admin
from tapproxy.proxy import http1
from tapproxy.proxy import websocket
from tapproxy.proxy.pipeline import Pipeline
from tapproxy.utils import asyncio_utils
from tapproxy.utils import human

if TYPE_CHECKING:
    from tapproxy.certs import CertStoreEntry
    from tapproxy.proxy.server import ProxyResources

logger = logging.getLogger(__name__)

UNKNOWN_DESTINATION = (
    b"Request destination unknown. "
    b"Unable to figure out where this request should be forwarded to."
)
LOCALHOST = ("localhost", "127.0.0.1", "::1")


def connect_established(http_version: str) -> bytes:
    return f"HTTP/{http_version} 200 OK\r\n\r\n".encode()


def connect_failed(error: Exception) -> bytes:
    message = str(error).replace("\r", " ").replace("\n", " ")
    return (
        "HTTP/1.1 502\r\n"
        "Proxy-Error: true\r\n"
        f"Proxy-Error-Message: {message}\r\n"
        "Content-Type: text/html\r\n"
        "\r\n"
    ).encode("latin-1", "replace")


async def _read_chunks(stream: streams.Stream):
    while True:
        data = await stream.read()
        if not data:
            return
        yield data


async def pipe(src: streams.Stream, dst: streams.Stream, throttle=None) -> None:
    """
    Copy bytes from src to dst until src reaches EOF, then half-close dst.
    """
    chunks = _read_chunks(src)
    if throttle is not None:
        chunks = throttle.throttle(chunks)
    async for chunk in chunks:
        dst.write(chunk)
        await dst.drain()
    dst.write_eof()


async def splice(
    client: streams.Stream, server: streams.Stream, throttle=None
) -> OSError | None:
    """
    Relay both directions until both reach EOF. A transport error in either
    direction closes both streams. Returns the first error, if any.
    """
    error: OSError | None = None

    async def relay(src: streams.Stream, dst: streams.Stream, throttle) -> None:
        nonlocal error
        try:
            await pipe(src, dst, throttle)
        except OSError as e:
            error = error or e
            client.close()
            server.close()

    await asyncio.gather(
        relay(client, server, None),
        relay(server, client, throttle),
    )
    return error


class ConnectionDispatcher:
    def __init__(
        self,
        options: Options,
        rules: rules.RuleHolder,
        pipeline: Pipeline,
        resources: ProxyResources,
        admin_api: admin.AdminApi | None = None,
    ):
        self.options = options
        self.rules = rules
        self.pipeline = pipeline
        self.resources = resources
        self.admin_api = admin_api

    def log(
        self, message: str, level: int = logging.INFO, client: tuple | None = None
    ) -> None:
        logger.log(level, message, extra={"client": client})

    @property
    def verify_upstream(self) -> bool:
        return not self.options.ignore_unauthorized_ssl

    async def _proxy_cert(self, sni: str | None) -> CertStoreEntry:
        assert self.options.proxy_hostname
        return await self.resources.tls_pool.issue(self.options.proxy_hostname)

    async def handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """
        Serve a connection accepted by the main listener.
        """
        peername = writer.get_extra_info("peername")
        task = asyncio.current_task()
        assert task
        asyncio_utils.set_task_debug_info(task, name="client handler", client=peername)
        self.log("client connect", logging.DEBUG, peername)

        stream: streams.Stream
        if self.options.proxy_type == "https":
            try:
                stream = await tls.accept_tls(reader, writer, self._proxy_cert)
            except (ConnectionError, SSL.Error, exceptions.CertificateIssueError) as e:
                self.log(f"TLS handshake failed: {e}", logging.INFO, peername)
                writer.close()
                return
        else:
            stream = streams.Stream(reader, writer)

        with self.resources.socket_pool.register(stream):
            try:
                await self.handle_stream(stream, main=True)
            finally:
                stream.close()
        self.log("client disconnect", logging.DEBUG, peername)

    async def handle_tls_stream(self, stream: streams.Stream) -> None:
        """
        Serve a decrypted connection from the TLS pool.
        """
        with self.resources.socket_pool.register(stream):
            await self.handle_stream(stream)

    async def handle_stream(self, stream: streams.Stream, main: bool = False) -> None:
        conn = http1.HttpConnection(stream, h11.SERVER)
        client = stream.peername
        while True:
            try:
                event = await conn.next_event()
            except h11.RemoteProtocolError as e:
                self.log(f"HTTP protocol error in client request: {e}", logging.INFO, client)
                await self.send_error(conn, e.error_status_hint, str(e).encode())
                return
            except OSError as e:
                self.log(f"client connection error: {e}", logging.DEBUG, client)
                return
            if not isinstance(event, h11.Request):
                return

            try:
                keep_alive = await self.dispatch(conn, event, main)
            except (OSError, h11.ProtocolError) as e:
                self.log(f"client connection error: {e}", logging.DEBUG, client)
                return
            if not keep_alive:
                return

    async def dispatch(
        self, conn: http1.HttpConnection, request: h11.Request, main: bool
    ) -> bool:
        """
        Route one request. Returns True if the connection can serve another request.
        """
        stream = conn.stream
        client = stream.peername
        method = request.method.decode("latin-1").upper()
        target = request.target.decode("latin-1")
        headers = http1.from_h11_request_headers(request)

        if method == "CONNECT":
            if not main:
                await self.send_error(conn, 405, b"CONNECT is not allowed here.")
                return False
            await self.handle_connect(conn, request)
            return False

        if main and self.admin_api and admin.is_admin_path(target):
            return await self.admin_api.handle(conn, target)

        if websocket.is_upgrade_request(headers):
            url = self.websocket_url(target, headers, stream.is_tls)
            if url is None:
                await self.send_error(conn, 400, UNKNOWN_DESTINATION)
                return False
            await websocket.relay(
                conn,
                request,
                url,
                self.rules.rule,
                client_address=client,
                verify=self.verify_upstream,
                record=self.pipeline.record,
            )
            return False

        url = self.request_url(target, headers, stream)
        if url is None:
            self.log(f"Unknown destination: {method} {target}", logging.INFO, client)
            await self.send_error(conn, 400, UNKNOWN_DESTINATION)
            return False
        return await self.pipeline.handle(
            conn, request, url, client_address=client, is_tls=stream.is_tls
        )

    def request_url(
        self, target: str, headers: Headers, stream: streams.Stream
    ) -> str | None:
        """
        The absolute URL of a request: absolute-form targets as-is, origin-form
        targets from the Host header. None if the request is addressed to the
        proxy itself or has no destination.
        """
        if target.lower().startswith(("http://", "https://")):
            return target
        host = headers.get("host")
        if not target.startswith("/") or not host:
            return None
        if self.is_self(host, stream):
            return None
        scheme = "https" if stream.is_tls else "http"
        return f"{scheme}://{host}{target}"

    def is_self(self, host_header: str, stream: streams.Stream) -> bool:
        try:
            host, port = split_host_header(host_header, 443 if stream.is_tls else 80)
        except ValueError:
            return True
        sockname = stream.sockname
        if not sockname or port != sockname[1]:
            return False
        return host in LOCALHOST or host == sockname[0] or host == self.options.proxy_hostname

    @staticmethod
    def websocket_url(target: str, headers: Headers, secure: bool) -> str | None:
        parts = urllib.parse.urlsplit(target)
        if parts.scheme in ("http", "https", "ws", "wss"):
            scheme = "wss" if parts.scheme in ("https", "wss") else "ws"
            path = parts.path or "/"
            if parts.query:
                path += "?" + parts.query
            return f"{scheme}://{parts.netloc}{path}"
        host = headers.get("host")
        if not host:
            return None
        return websocket.upstream_url(host, target, secure)

    async def send_error(
        self, conn: http1.HttpConnection, status_code: int, message: bytes
    ) -> None:
        try:
            await conn.send(
                h11.Response(
                    status_code=status_code,
                    headers=[
                        (b"Content-Type", b"text/plain"),
                        (b"Content-Length", str(len(message)).encode()),
                        (b"Connection", b"close"),
                    ],
                ),
                h11.Data(data=message),
                h11.EndOfMessage(),
            )
        except (h11.LocalProtocolError, OSError) as e:
            logger.debug(f"Cannot send error response: {e}")

    async def handle_connect(
        self, conn: http1.HttpConnection, request: h11.Request
    ) -> None:
        stream = conn.stream
        client = stream.peername
        authority = request.target.decode("latin-1")
        try:
            host, port = split_host_header(authority, 80)
        except ValueError:
            await self.send_error(conn, 400, b"Invalid CONNECT target.")
            return
        host = host.strip("[]")

        # Consume the end of the CONNECT request, everything after it belongs to the tunnel.
        while True:
            event = await conn.next_event()
            if isinstance(event, h11.ConnectionClosed):
                return
            if isinstance(event, h11.EndOfMessage) or event is h11.PAUSED:
                break

        ctx = ConnectContext(
            host=host,
            port=port,
            http_version=request.http_version.decode(),
            headers=http1.from_h11_request_headers(request),
            client_address=client,
        )
        self.log(f"CONNECT {ctx.authority}", logging.DEBUG, client)
        upstream: streams.Stream | None = None
        tunneled: streams.Stream | None = None
        record_id = None
        rule = self.rules.rule
        try:
            should_intercept = self.options.intercept_https
            result = await rules.invoke(rule, hooks.IsDealConnectHook(ctx))
            if result is not None:
                should_intercept = bool(result)
            if self.options.force_no_intercept:
                should_intercept = False
            ctx.should_intercept = should_intercept

            stream.write(connect_established(ctx.http_version))
            await stream.drain()
            record_id = self.pipeline.record("append_connect", ctx)

            data = conn.trailing_data or await stream.read()
            if not data:
                self.pipeline.record("update_connect", record_id)
                return
            if data.startswith(b"GET "):
                # Plaintext WebSocket through CONNECT, served on this connection.
                ctx.should_intercept = False
                tunneled = streams.PrefixedStream(stream, data)
            else:
                if ctx.should_intercept:
                    target = await self.resources.tls_pool.get_server(host)
                else:
                    target = (host, port)
                self.log(
                    f"{'intercept' if ctx.should_intercept else 'tunnel'} "
                    f"{ctx.authority} via {human.format_address(target)}",
                    logging.DEBUG,
                    client,
                )
                try:
                    upstream = await streams.open_stream(*target)
                except OSError as e:
                    raise exceptions.UpstreamError(
                        f"Cannot connect to {human.format_address(target)}: {e}"
                    ) from e
                upstream.write(data)
                await upstream.drain()
        except Exception as e:
            self.pipeline.record("update_connect", record_id, e)
            await self.connect_error(rule, ctx, stream, e)
            if upstream is not None:
                upstream.close()
            return

        self.pipeline.record("update_connect", record_id)
        if tunneled is not None:
            self.log(f"serve plaintext {ctx.authority} in-process", logging.DEBUG, client)
            await self.handle_stream(tunneled)
            return

        assert upstream is not None
        throttle = self.pipeline.throttle if ctx.should_intercept else None
        with self.resources.socket_pool.register(upstream):
            try:
                error = await splice(stream, upstream, throttle)
            finally:
                upstream.close()
        if error is not None:
            self.log(f"Tunnel to {ctx.authority} failed: {error}", logging.DEBUG, client)
            with rules.safecall("on_connect_error"):
                await rules.invoke(rule, hooks.OnConnectErrorHook(ctx, error))

    async def connect_error(
        self, rule, ctx: ConnectContext, stream: streams.Stream, error: Exception
    ) -> None:
        self.log(
            f"CONNECT {ctx.authority} failed: {error}", logging.WARNING, ctx.client_address
        )
        with rules.safecall("on_connect_error"):
            await rules.invoke(rule, hooks.OnConnectErrorHook(ctx, error))
        with contextlib.suppress(OSError):
            stream.write(connect_failed(error))
            await stream.drain()
