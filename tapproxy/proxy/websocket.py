"""
WebSocket relay.

The client handshake is answered right away. The upstream connection is made
in the background; client messages that arrive before it is open are queued
and flushed in order once it is.
"""
from __future__ import annotations

import asyncio
import collections
import logging
import urllib.parse
from collections.abc import Callable
from typing import Any

import h11
import wsproto
import wsproto.events
import wsproto.utilities
from wsproto.frame_protocol import CloseReason

from tapproxy import exceptions
from tapproxy import hooks
from tapproxy import rules
from tapproxy.context import ResponseInfo
from tapproxy.context import WebSocketContext
from tapproxy.net import streams
from tapproxy.net.http.headers import Headers
from tapproxy.proxy import errors
from tapproxy.proxy import http1
from tapproxy.utils import asyncio_utils

logger = logging.getLogger(__name__)

MAX_REASON_BYTES = 123
NORMAL_CLOSURE_REASON = (
    "Normal closure. Original ws closed with code {code} and reason {reason}"
)


def translate_close(code: int | None, reason: str | None) -> tuple[int, str]:
    """
    Codes 1004 to 1006 must never be sent on the wire. When one side ends with
    one of them, the other side is closed normally instead.
    """
    code = code if code is not None else CloseReason.NO_STATUS_RCVD
    reason = reason or ""
    if 1004 <= code <= 1006:
        return 1000, NORMAL_CLOSURE_REASON.format(code=int(code), reason=reason)
    return int(code), reason


def truncate_reason(reason: str) -> str:
    # Close frame payloads are limited to 125 bytes, two of which hold the code.
    return reason.encode()[:MAX_REASON_BYTES].decode(errors="ignore")


def is_upgrade_request(headers: Headers) -> bool:
    return (
        "upgrade" in headers.get("connection", "").lower()
        and headers.get("upgrade", "").lower() == "websocket"
    )


def filter_headers(headers: Headers) -> Headers:
    """
    Remove the headers that belong to the client's handshake or to its connection.
    """
    return Headers(
        (k, v)
        for k, v in headers.fields
        if not k.lower().startswith("sec-websocket")
        and k.lower() not in ("connection", "upgrade")
    )


def parse_protocols(headers: Headers) -> list[str]:
    value = headers.get("sec-websocket-protocol", "")
    return [p.strip() for p in value.split(",") if p.strip()]


def upstream_url(host_header: str, path: str, secure: bool) -> str:
    return f"{'wss' if secure else 'ws'}://{host_header}{path}"


class _Message:
    """Accumulates the frames of one message."""

    def __init__(self):
        self.parts: list[Any] = []
        self.text = False

    def add(self, event: wsproto.events.Message) -> wsproto.events.Message | None:
        self.text = isinstance(event, wsproto.events.TextMessage)
        self.parts.append(event.data)
        if not event.message_finished:
            return None
        if self.text:
            message: wsproto.events.Message = wsproto.events.TextMessage(
                data="".join(self.parts)
            )
        else:
            message = wsproto.events.BytesMessage(data=b"".join(self.parts))
        self.parts = []
        return message


class WebSocketSession:
    """
    A client WebSocket and its upstream counterpart.
    """

    def __init__(
        self,
        client: streams.Stream,
        client_ws: wsproto.Connection,
        context: WebSocketContext,
        verify: bool = True,
        record: Callable[..., Any] | None = None,
    ):
        self.client = client
        self.client_ws = client_ws
        self.context = context
        self.verify = verify
        self.record = record
        self.record_id: int | None = None

        self.upstream: streams.Stream | None = None
        self.upstream_ws: wsproto.WSConnection | None = None
        self.ready = False
        self.queue: collections.deque[wsproto.events.Message] = collections.deque()

    def __repr__(self):
        return f"WebSocketSession({self.context.url}, ready={self.ready})"

    def log(self, message: str, level: int = logging.DEBUG) -> None:
        logger.log(level, message, extra={"client": self.context.client_address})

    def notify(self, method: str, *args: Any) -> Any:
        if self.record is None:
            return None
        return self.record(method, *args)

    @property
    def client_open(self) -> bool:
        return self.client_ws.state is wsproto.ConnectionState.OPEN

    @property
    def upstream_open(self) -> bool:
        return (
            self.upstream_ws is not None
            and self.upstream_ws.state is wsproto.ConnectionState.OPEN
        )

    def send_client(self, event: wsproto.events.Event) -> None:
        self.client.write(self.client_ws.send(event))

    def send_upstream(self, event: wsproto.events.Event) -> None:
        assert self.upstream and self.upstream_ws
        self.upstream.write(self.upstream_ws.send(event))

    def forward_to_upstream(self, message: wsproto.events.Message) -> None:
        self.notify("append_ws_message", self.record_id, message.data, True)
        if not self.ready or self.queue:
            self.queue.append(message)
        elif self.upstream_open:
            self.send_upstream(message)

    def flush_queue(self) -> None:
        # No await in here: new messages cannot overtake queued ones.
        while self.queue:
            self.send_upstream(self.queue.popleft())
        self.ready = True

    def close_client(self, code: int, reason: str) -> None:
        if self.client_open:
            reason = truncate_reason(reason)
            self.send_client(wsproto.events.CloseConnection(code=code, reason=reason))

    def close_upstream(self, code: int, reason: str) -> None:
        if self.upstream_open:
            reason = truncate_reason(reason)
            self.send_upstream(wsproto.events.CloseConnection(code=code, reason=reason))

    async def run(self) -> None:
        self.record_id = self.notify("append_websocket", self.context)
        upstream_task = asyncio_utils.create_task(
            self.relay_upstream(),
            name=f"websocket upstream {self.context.url}",
            keep_ref=False,
            client=self.context.client_address,
        )
        try:
            await self.relay_client()
        finally:
            await asyncio.wait([upstream_task], timeout=5)
            upstream_task.cancel()
            if self.upstream:
                self.upstream.close()
            self.client.close()

    async def relay_client(self) -> None:
        message = _Message()
        while True:
            data = await self.client.read()
            self.client_ws.receive_data(data or None)
            for event in self.client_ws.events():
                if isinstance(event, wsproto.events.Message):
                    complete = message.add(event)
                    if complete is not None:
                        self.forward_to_upstream(complete)
                elif isinstance(event, wsproto.events.Ping):
                    self.send_client(event.response())
                elif isinstance(event, wsproto.events.CloseConnection):
                    self.log(f"client closed with code {event.code} and reason {event.reason!r}")
                    code, reason = translate_close(event.code, event.reason)
                    if self.client_ws.state is wsproto.ConnectionState.REMOTE_CLOSING:
                        self.send_client(event.response())
                    self.queue.clear()
                    self.ready = True
                    if self.upstream_open:
                        self.close_upstream(code, reason)
                        await self.upstream.drain()  # type: ignore[union-attr]
                    await self.client.drain()
                    return
            await self.client.drain()
            if self.upstream and self.ready:
                await self.upstream.drain()

    async def connect_upstream(self) -> wsproto.events.AcceptConnection:
        ctx = self.context
        secure = ctx.secure
        self.upstream = await http1.open_upstream(
            ctx.hostname, ctx.port, secure, verify=self.verify
        )
        self.upstream_ws = wsproto.WSConnection(wsproto.ConnectionType.CLIENT)
        authority = urllib.parse.urlsplit(ctx.url).netloc
        extra_headers = [
            (k.encode("latin-1"), v.encode("latin-1", "replace"))
            for k, v in ctx.headers.fields
            if k.lower() != "host"
        ]
        self.upstream.write(
            self.upstream_ws.send(
                wsproto.events.Request(
                    host=authority,
                    target=ctx.path,
                    subprotocols=ctx.protocols,
                    extra_headers=extra_headers,
                )
            )
        )
        await self.upstream.drain()
        while True:
            data = await self.upstream.read()
            if not data:
                raise exceptions.UpstreamError(
                    f"{ctx.url} closed the connection during the handshake."
                )
            self.upstream_ws.receive_data(data)
            for event in self.upstream_ws.events():
                if isinstance(event, wsproto.events.AcceptConnection):
                    return event
                if isinstance(event, wsproto.events.RejectConnection):
                    raise exceptions.UpstreamError(
                        f"{ctx.url} rejected the WebSocket handshake with status {event.status_code}."
                    )

    async def relay_upstream(self) -> None:
        try:
            accepted = await self.connect_upstream()
        except (OSError, exceptions.UpstreamError, wsproto.utilities.ProtocolError, h11.ProtocolError) as e:
            self.log(f"upstream WebSocket error: {e}", logging.WARNING)
            self.notify("update_websocket", self.record_id, None, None, e)
            self.close_client(CloseReason.GOING_AWAY, str(e))
            await self.client.drain()
            self.client.close()
            return
        self.log(f"upstream WebSocket open: {self.context.url}")
        self.notify(
            "update_websocket",
            self.record_id,
            101,
            http1.from_h11_headers(list(accepted.extra_headers)),
        )
        assert self.upstream and self.upstream_ws
        if not self.client_open:
            self.close_upstream(1000, "")
            return
        self.flush_queue()
        await self.upstream.drain()

        message = _Message()
        try:
            while True:
                data = await self.upstream.read()
                self.upstream_ws.receive_data(data or None)
                for event in self.upstream_ws.events():
                    if isinstance(event, wsproto.events.Message):
                        complete = message.add(event)
                        if complete is not None and self.client_open:
                            self.notify("append_ws_message", self.record_id, complete.data, False)
                            self.send_client(complete)
                    elif isinstance(event, wsproto.events.Ping):
                        self.send_upstream(event.response())
                    elif isinstance(event, wsproto.events.CloseConnection):
                        self.log(
                            f"upstream closed with code {event.code} and reason {event.reason!r}"
                        )
                        code, reason = translate_close(event.code, event.reason)
                        if self.upstream_ws.state is wsproto.ConnectionState.REMOTE_CLOSING:
                            self.send_upstream(event.response())
                        self.close_client(code, reason)
                        await self.client.drain()
                        await self.upstream.drain()
                        return
                await self.upstream.drain()
                await self.client.drain()
        except (OSError, wsproto.utilities.ProtocolError) as e:
            self.log(f"upstream WebSocket error: {e}", logging.WARNING)
            self.close_client(CloseReason.GOING_AWAY, str(e))
            await self.client.drain()
            self.client.close()


async def relay(
    conn: http1.HttpConnection,
    request: h11.Request,
    url: str,
    rule: Any,
    client_address: tuple | None = None,
    verify: bool = True,
    record: Callable[..., Any] | None = None,
) -> None:
    """
    Accept a WebSocket upgrade on a client connection and relay it upstream.

    `url` is the ws:// or wss:// URL of the upstream server. `record` is called
    with a recorder method name and its arguments.
    """
    headers = http1.from_h11_request_headers(request)
    key = headers.get("sec-websocket-key")
    # Read until the end of the (empty) request body so that h11 allows the switch.
    while True:
        event = await conn.next_event()
        if isinstance(event, (h11.EndOfMessage, h11.ConnectionClosed)):
            break
    if not key or isinstance(event, h11.ConnectionClosed):
        await conn.send(
            h11.Response(status_code=400, headers=[(b"content-length", b"0")]),
            h11.EndOfMessage(),
        )
        return

    context = WebSocketContext(
        url=url,
        headers=filter_headers(headers),
        protocols=parse_protocols(headers),
        client_address=client_address,
    )
    try:
        await rules.invoke(rule, hooks.BeforeWsClientHook(context))
    except Exception as e:
        logger.warning(f"Error processing {url}: {e}", extra={"client": client_address})
        logger.debug("Traceback:", exc_info=True)
        await send_error(conn, errors.error_response(e, url))
        return

    response_headers = [
        (b"Upgrade", b"websocket"),
        (b"Connection", b"Upgrade"),
        (b"Sec-WebSocket-Accept", wsproto.utilities.generate_accept_token(key.encode())),
        (b"x-tapproxy-websocket", b"true"),
    ]
    offered = parse_protocols(headers)
    if offered:
        response_headers.append((b"Sec-WebSocket-Protocol", offered[0].encode()))
    await conn.send(
        h11.InformationalResponse(status_code=101, headers=response_headers)
    )
    logger.info(f"WebSocket {context.url}", extra={"client": client_address})

    client_ws = wsproto.Connection(
        wsproto.ConnectionType.SERVER, trailing_data=conn.trailing_data
    )
    session = WebSocketSession(conn.stream, client_ws, context, verify=verify, record=record)
    await session.run()


async def send_error(conn: http1.HttpConnection, res: ResponseInfo) -> None:
    body = res.body or b""
    headers = res.headers.copy()
    headers["Content-Length"] = str(len(body))
    headers["Connection"] = "close"
    try:
        await conn.send(
            h11.Response(status_code=res.status_code, headers=http1.to_h11_headers(headers)),
            h11.Data(data=body),
            h11.EndOfMessage(),
        )
    except (h11.LocalProtocolError, OSError) as e:
        logger.debug(f"Cannot send error response: {e}")
