"""
The request/response pipeline.

Every request that is not an administrative request runs through the stages
below, in order. Rule hooks run between the stages and may inspect or replace
the request and the response:

    is_deal_request -> is_wait_req_data -> before_send_request -> fetch
        -> before_send_response -> emit

An exception in any stage before emit is turned into an error response, which
the on_error hook may replace, and the pipeline continues with emit.
"""
from __future__ import annotations

import collections
import logging
import time
from collections.abc import AsyncIterable
from collections.abc import AsyncIterator
from typing import Any

import h11

from tapproxy import hooks
from tapproxy import rules
from tapproxy.context import RequestContext
from tapproxy.context import RequestInfo
from tapproxy.context import ResponseInfo
from tapproxy.net import encoding
from tapproxy.net.http.headers import Headers
from tapproxy.proxy import errors
from tapproxy.proxy import http1
from tapproxy.proxy.throttle import ThrottleGroup
from tapproxy.recorder import Recorder

logger = logging.getLogger(__name__)

ORIGIN_CONTENT_ENCODING = "x-tapproxy-origin-content-encoding"
ORIGIN_CONTENT_LENGTH = "x-tapproxy-origin-content-length"
ORIGIN_CONNECTION = "x-tapproxy-origin-connection"


def decode_response_body(headers: Headers, raw: bytes) -> bytes:
    """
    Decode a buffered response body. The original encoding and length are kept
    under renamed headers, the returned body is uncompressed.

    Raises:
        ValueError, if the body cannot be decoded.
    """
    headers[ORIGIN_CONTENT_LENGTH] = str(len(raw))
    content_encoding = headers.get("content-encoding", "")
    if not raw or not content_encoding or not encoding.is_supported(content_encoding):
        return raw
    decoded = encoding.decode(raw, content_encoding)
    headers[ORIGIN_CONTENT_ENCODING] = content_encoding
    del headers["content-encoding"]
    return decoded


def has_no_body(method: str, status_code: int) -> bool:
    return method.upper() == "HEAD" or status_code in (204, 304) or status_code < 200


async def _iter_bytes(data: bytes) -> AsyncIterator[bytes]:
    if data:
        yield data


async def _replay(
    buffered: list[bytes], rest: AsyncIterator[bytes]
) -> AsyncIterator[bytes]:
    pending = collections.deque(buffered)
    buffered.clear()
    while pending:
        yield pending.popleft()
    async for chunk in rest:
        yield chunk


class Pipeline:
    def __init__(
        self,
        rules: rules.RuleHolder,
        recorder: Recorder | None,
        chunk_size_threshold: int,
        throttle: ThrottleGroup | None = None,
        verify_upstream: bool = True,
    ):
        self.rules = rules
        self.recorder = recorder
        self.chunk_size_threshold = chunk_size_threshold
        self.throttle = throttle
        self.verify_upstream = verify_upstream

    def record(self, method: str, *args: Any) -> Any:
        """
        Notify the recorder. Recorder failures never affect the response.
        """
        if self.recorder is None:
            return None
        with rules.safecall("Recorder"):
            return getattr(self.recorder, method)(*args)
        return None

    async def handle(
        self,
        conn: http1.HttpConnection,
        request: h11.Request,
        url: str,
        client_address: tuple | None = None,
        is_tls: bool = False,
    ) -> bool:
        """
        Process one client request and send the response.

        Returns:
            True, if the client connection can be used for another request.
        """
        # The rule is captured once, a reload only affects later requests.
        rule = self.rules.rule
        req = RequestInfo(
            method=request.method.decode(),
            url=url,
            headers=http1.from_h11_request_headers(request),
            http_version=request.http_version.decode(),
        )
        ctx = RequestContext.from_request(req, client_address, is_tls)
        body = http1.RequestBody(conn, request)
        ctx.recorder_id = self.record("append_id")
        logger.info(f"{req.method} {url}", extra={"client": client_address})
        upstream: http1.UpstreamResponse | None = None

        try:
            self.record("update_raw_req", ctx)
            if await rules.invoke(rule, hooks.IsDealRequestHook(ctx)) is False:
                ctx.deal_request = False
            if not ctx.deal_request:
                upstream = await self.fetch(ctx, body)
            else:
                wait = await rules.invoke(rule, hooks.IsWaitReqDataHook(ctx))
                if wait is not None:
                    ctx.wait_req_data = bool(wait)
                if ctx.wait_req_data:
                    await self.read_request_body(ctx, body)
                    ctx.req.body = ctx.raw_req.body

                result = await rules.invoke(rule, hooks.BeforeSendRequestHook(ctx))
                if isinstance(result, ResponseInfo):
                    ctx.res = result
                elif isinstance(result, RequestInfo):
                    ctx.req = result

                if ctx.res.status_code is None:
                    upstream = await self.fetch(ctx, body)
                    result = await rules.invoke(rule, hooks.BeforeSendResponseHook(ctx))
                    if isinstance(result, ResponseInfo):
                        ctx.res = result
        except Exception as e:
            logger.warning(
                f"Error processing {ctx.url}: {e}", extra={"client": client_address}
            )
            logger.debug("Traceback:", exc_info=True)
            await self.on_error(rule, ctx, e)

        try:
            await self.emit(conn, ctx)
        except Exception as e:
            logger.info(
                f"Failed to send response for {ctx.url}: {e}",
                extra={"client": client_address},
            )
            return False
        finally:
            if upstream is not None:
                upstream.close()

        if not body.done:
            try:
                await self.read_request_body(ctx, body)
            except (OSError, h11.ProtocolError) as e:
                logger.debug(f"Cannot read the rest of the request body: {e}")
                return False
        return conn.start_next_cycle()

    async def read_request_body(self, ctx: RequestContext, body: http1.RequestBody) -> None:
        ctx.raw_req.body = await body.read_all()
        self.record("update_raw_req_body", ctx)

    async def on_error(self, rule: Any, ctx: RequestContext, error: Exception) -> None:
        ctx.error = error
        ctx.res = errors.error_response(error, ctx.url)
        # A failing error hook leaves the default error response in place.
        with rules.safecall("on_error"):
            result = await rules.invoke(rule, hooks.OnErrorHook(ctx, error))
            if isinstance(result, ResponseInfo):
                ctx.res = result

    async def fetch(
        self, ctx: RequestContext, body: http1.RequestBody
    ) -> http1.UpstreamResponse:
        """
        Send the working request upstream and read the response head. With
        `wait_res_data`, the response body is read and decoded as well.
        """
        ctx.proxy_start = time.time()
        live_body = body if ctx.req.body is None and not body.done else None
        upstream = await http1.fetch(ctx.req, live_body, verify=self.verify_upstream)
        if live_body is not None and body.done:
            ctx.raw_req.body = body.data
            self.record("update_raw_req_body", ctx)
        self.record("update_user_req", ctx)

        ctx.raw_res = ResponseInfo(
            status_code=upstream.status_code,
            headers=upstream.headers,
            reason=upstream.reason,
        )
        ctx.res = ResponseInfo(
            status_code=upstream.status_code,
            headers=upstream.headers.copy(),
            reason=upstream.reason,
        )
        self.record("update_raw_res", ctx)

        if ctx.deal_request and ctx.wait_res_data:
            try:
                await self.read_response_body(ctx, upstream.iter_body())
            except BaseException:
                upstream.close()
                raise
        else:
            ctx.res.stream = self._collect_raw_body(ctx, upstream.iter_body())
        ctx.proxy_end = time.time()
        return upstream

    async def read_response_body(
        self, ctx: RequestContext, chunks: AsyncIterator[bytes]
    ) -> None:
        """
        Buffer the response body. A body that grows past the threshold is
        streamed instead: buffered chunks are replayed, the rest is relayed
        without buffering or decoding.
        """
        buffered: list[bytes] = []
        size = 0
        async for chunk in chunks:
            buffered.append(chunk)
            size += len(chunk)
            if size >= self.chunk_size_threshold:
                logger.debug(
                    f"Response body of {ctx.url} exceeds {self.chunk_size_threshold} bytes, streaming."
                )
                ctx.res.stream = _replay(buffered, chunks)
                return
        raw = b"".join(buffered)
        ctx.raw_res.body = raw
        self.record("update_raw_res_body", ctx)
        ctx.res.body = decode_response_body(ctx.res.headers, raw)

    async def _collect_raw_body(
        self, ctx: RequestContext, chunks: AsyncIterable[bytes]
    ) -> AsyncIterator[bytes]:
        # Keep a copy for the recorder, up to the threshold.
        buffered: list[bytes] | None = []
        size = 0
        async for chunk in chunks:
            if buffered is not None:
                buffered.append(chunk)
                size += len(chunk)
                if size >= self.chunk_size_threshold:
                    buffered = None
            yield chunk
        if buffered is not None:
            ctx.raw_res.body = b"".join(buffered)
            self.record("update_raw_res_body", ctx)

    def response_headers(self, ctx: RequestContext) -> tuple[Headers, bool]:
        """
        Compute the headers sent to the client.

        Returns:
            The headers and whether the raw upstream response is relayed.
        """
        res = ctx.res
        if not ctx.deal_request and ctx.error is None:
            return ctx.raw_res.headers.copy(), True

        use_raw = not ctx.wait_res_data and res.body is None
        headers = res.headers.copy()
        assert res.status_code is not None
        if not use_raw and not has_no_body(ctx.req.method, res.status_code):
            headers.pop("content-length", None)
            connection = headers.pop("connection", None)
            if connection:
                headers[ORIGIN_CONNECTION] = connection
            if self.throttle is None and not res.chunked and res.body is not None:
                headers["Content-Length"] = str(len(res.body))
        return headers, use_raw

    async def emit(self, conn: http1.HttpConnection, ctx: RequestContext) -> None:
        res = ctx.res
        if not res.status_code:
            raise ValueError("Response has no status code.")

        headers, use_raw = self.response_headers(ctx)
        self.record("update_user_res", ctx, use_raw)
        try:
            await conn.send(
                h11.Response(
                    status_code=res.status_code,
                    headers=http1.to_h11_headers(headers),
                    reason=res.reason.encode("latin-1", "replace"),
                )
            )
            if res.body is not None:
                chunks: AsyncIterable[bytes] = _iter_bytes(res.body)
            elif res.stream is not None:
                chunks = res.stream
            else:
                chunks = _iter_bytes(b"")
            if has_no_body(ctx.req.method, res.status_code):
                if res.stream is not None:
                    # Drain upstream so that its connection gets closed.
                    async for _ in res.stream:
                        pass
            else:
                if self.throttle is not None:
                    chunks = self.throttle.throttle(chunks)
                async for chunk in chunks:
                    await conn.send(h11.Data(data=chunk))
            await conn.send(h11.EndOfMessage())
        finally:
            ctx.client_end = time.time()
            self.record("update_user_res_end", ctx, use_raw)
