"""
HTTP/1.1 on top of a Stream, driven by h11 state machines.

HttpConnection wraps one h11.Connection (server side for clients, client side
for upstream servers), RequestBody tees a client request body, and fetch()
performs a single upstream request on a fresh connection.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

import h11

from tapproxy import exceptions
from tapproxy.context import RequestInfo
from tapproxy.net import streams
from tapproxy.net import tls
from tapproxy.net.http.headers import Headers

logger = logging.getLogger(__name__)

MAX_HEAD_SIZE = 64 * 1024


def to_h11_headers(headers: Headers) -> list[tuple[bytes, bytes]]:
    return [
        (k.encode("latin-1"), v.encode("latin-1", "replace")) for k, v in headers.fields
    ]


def from_h11_headers(raw: list[tuple[bytes, bytes]]) -> Headers:
    return Headers(raw)


def from_h11_request_headers(request: h11.Request) -> Headers:
    # h11 lowercases header names, raw_items() keeps the spelling from the wire.
    return Headers(request.headers.raw_items())


class HttpConnection:
    """
    An h11 connection on a Stream.
    """

    def __init__(self, stream: streams.Stream, our_role):
        self.stream = stream
        self.conn = h11.Connection(our_role, max_incomplete_event_size=MAX_HEAD_SIZE)

    def __repr__(self):
        return f"HttpConnection({self.stream!r}, {self.conn.our_state}/{self.conn.their_state})"

    async def next_event(self):
        while True:
            event = self.conn.next_event()
            if event is h11.NEED_DATA:
                if self.conn.they_are_waiting_for_100_continue:
                    await self.send(h11.InformationalResponse(status_code=100, headers=[]))
                data = await self.stream.read()
                self.conn.receive_data(data)
                continue
            return event

    async def send(self, *events) -> None:
        for event in events:
            data = self.conn.send(event)
            if data:
                self.stream.write(data)
        await self.stream.drain()

    async def iter_body(self) -> AsyncIterator[bytes]:
        while True:
            event = await self.next_event()
            if isinstance(event, h11.Data):
                yield bytes(event.data)
            elif isinstance(event, h11.EndOfMessage):
                return
            elif isinstance(event, h11.ConnectionClosed):
                raise ConnectionError("Connection closed before message was complete.")

    @property
    def trailing_data(self) -> bytes:
        """Bytes received after a CONNECT or Upgrade request."""
        data, _ = self.conn.trailing_data
        return bytes(data)

    def start_next_cycle(self) -> bool:
        """
        Prepare for the next request on a keep-alive connection.
        Returns False if the connection cannot be reused.
        """
        if self.conn.our_state is h11.DONE and self.conn.their_state is h11.DONE:
            self.conn.start_next_cycle()
            return True
        return False


class RequestBody:
    """
    A client request body. Chunks are handed to the upstream request as they
    arrive while a copy is kept, so the complete body is available for
    inspection once the stream has been consumed.
    """

    def __init__(self, conn: HttpConnection, request: h11.Request):
        self.conn = conn
        headers = from_h11_request_headers(request)
        self.content_length = headers.get("content-length")
        self.chunked = "chunked" in headers.get("transfer-encoding", "").lower()
        self.chunks: list[bytes] = []
        self.done = False
        self._consumer = False

    @property
    def has_body(self) -> bool:
        if self.chunked:
            return True
        try:
            return int(self.content_length or 0) > 0
        except ValueError:
            return False

    @property
    def data(self) -> bytes:
        assert self.done
        return b"".join(self.chunks)

    async def stream(self) -> AsyncIterator[bytes]:
        if self._consumer:
            raise RuntimeError("Request body can only be streamed once.")
        self._consumer = True
        if self.done:
            for chunk in self.chunks:
                yield chunk
            return
        async for chunk in self.conn.iter_body():
            self.chunks.append(chunk)
            yield chunk
        self.done = True

    async def read_all(self) -> bytes:
        if not self.done:
            async for _ in self.stream():
                pass
        return self.data


@dataclass
class UpstreamResponse:
    status_code: int
    reason: str
    headers: Headers
    http_version: str
    conn: HttpConnection

    async def iter_body(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.conn.iter_body():
                yield chunk
        finally:
            self.close()

    def close(self) -> None:
        self.conn.stream.close()


async def open_upstream(
    host: str,
    port: int,
    secure: bool,
    verify: bool = True,
) -> streams.Stream:
    """
    Raises:
        UpstreamError, if the server cannot be reached or the TLS handshake fails.
    """
    try:
        reader, writer = await asyncio.open_connection(host.strip("[]"), port)
    except OSError as e:
        raise exceptions.UpstreamError(f"Cannot connect to {host}:{port}: {e}") from e
    if not secure:
        return streams.Stream(reader, writer)
    try:
        return await tls.connect_tls(reader, writer, host, verify=verify)
    except (exceptions.UpstreamError, ConnectionError):
        writer.close()
        raise


async def fetch(
    req: RequestInfo,
    body: RequestBody | None = None,
    verify: bool = True,
) -> UpstreamResponse:
    """
    Send a request upstream and read the response head.

    `req.body` is sent when set. Otherwise the live client body is streamed, keeping
    its Content-Length or falling back to chunked framing.
    """
    headers = req.headers.copy()
    headers.pop("transfer-encoding", None)
    headers["Host"] = req.authority
    payload = req.body
    if payload:
        headers["Content-Length"] = str(len(payload))
    elif payload is not None:
        # No forced Content-Length: 0 for bodiless requests.
        if "content-length" in headers:
            headers["Content-Length"] = "0"
    elif body is not None and body.has_body:
        if body.content_length is None:
            headers["Transfer-Encoding"] = "chunked"
    else:
        headers.pop("content-length", None)

    stream = await open_upstream(
        req.hostname, req.port, req.protocol == "https", verify=verify
    )
    conn = HttpConnection(stream, h11.CLIENT)
    try:
        await conn.send(
            h11.Request(
                method=req.method.encode(),
                target=req.path.encode(),
                headers=to_h11_headers(headers),
            )
        )
        if payload:
            await conn.send(h11.Data(data=payload))
        elif payload is None and body is not None and body.has_body:
            async for chunk in body.stream():
                await conn.send(h11.Data(data=chunk))
        await conn.send(h11.EndOfMessage())

        while True:
            event = await conn.next_event()
            if isinstance(event, h11.Response):
                break
            if isinstance(event, h11.ConnectionClosed):
                raise exceptions.UpstreamError(
                    f"Server {req.authority} closed the connection without a response."
                )
            # 1xx responses are not relayed.
    except h11.ProtocolError as e:
        stream.close()
        raise exceptions.UpstreamError(f"HTTP protocol error from {req.authority}: {e}") from e
    except (OSError, ConnectionError) as e:
        stream.close()
        raise exceptions.UpstreamError(f"Connection to {req.authority} failed: {e}") from e
    except BaseException:
        stream.close()
        raise

    return UpstreamResponse(
        status_code=event.status_code,
        reason=event.reason.decode("latin-1"),
        headers=from_h11_headers(event.headers.raw_items()),
        http_version=event.http_version.decode(),
        conn=conn,
    )
