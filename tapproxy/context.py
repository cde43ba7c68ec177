"""
Per-request state passed through the pipeline and to rule hooks.
"""
from __future__ import annotations

import time
import urllib.parse
from collections.abc import AsyncIterator
from dataclasses import dataclass
from dataclasses import field

from tapproxy.net.http.headers import Headers

DEFAULT_PORTS = {"http": 80, "https": 443, "ws": 80, "wss": 443}


def split_host_header(host_header: str, default_port: int) -> tuple[str, int]:
    """
    Split "example.com:8080" or "[::1]:8080" into host and port.

    Raises:
        ValueError, if the port is not a number.
    """
    if host_header.startswith("["):
        host, _, rest = host_header[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else ""
    elif host_header.count(":") == 1:
        host, _, port = host_header.partition(":")
    else:
        host, port = host_header, ""
    return host, int(port) if port else default_port


def default_port(scheme: str) -> int:
    return DEFAULT_PORTS.get(scheme, 80)


@dataclass
class RequestInfo:
    method: str
    url: str
    """The absolute URL, e.g. https://example.com/path?query."""
    headers: Headers
    body: bytes | None = None
    http_version: str = "1.1"

    @property
    def protocol(self) -> str:
        return urllib.parse.urlsplit(self.url).scheme

    @property
    def hostname(self) -> str:
        return urllib.parse.urlsplit(self.url).hostname or ""

    @property
    def port(self) -> int:
        parts = urllib.parse.urlsplit(self.url)
        return parts.port or default_port(parts.scheme)

    @property
    def path(self) -> str:
        """The origin-form request target, e.g. /path?query."""
        parts = urllib.parse.urlsplit(self.url)
        path = parts.path or "/"
        if parts.query:
            path += "?" + parts.query
        return path

    @property
    def authority(self) -> str:
        return urllib.parse.urlsplit(self.url).netloc

    def copy(self) -> RequestInfo:
        return RequestInfo(
            method=self.method,
            url=self.url,
            headers=self.headers.copy(),
            body=self.body,
            http_version=self.http_version,
        )


@dataclass
class ResponseInfo:
    status_code: int | None = None
    headers: Headers = field(default_factory=Headers)
    body: bytes | None = None
    reason: str = ""
    stream: AsyncIterator[bytes] | None = None
    """
    The still-unread body when it is relayed instead of buffered.
    Setting `body` takes precedence over the stream.
    """

    @property
    def chunked(self) -> bool:
        return "chunked" in self.headers.get("transfer-encoding", "").lower()

    def copy(self) -> ResponseInfo:
        return ResponseInfo(
            status_code=self.status_code,
            headers=self.headers.copy(),
            body=self.body,
            reason=self.reason,
            stream=self.stream,
        )


@dataclass
class RequestContext:
    """
    One client request on its way through the pipeline.

    `raw_req` and `raw_res` are kept as received, rule hooks work on `req` and `res`.
    """

    raw_req: RequestInfo
    req: RequestInfo
    client_address: tuple | None = None
    is_tls: bool = False
    raw_res: ResponseInfo = field(default_factory=ResponseInfo)
    res: ResponseInfo = field(default_factory=ResponseInfo)

    wait_req_data: bool = False
    wait_res_data: bool = False
    deal_request: bool = True

    client_start: float = field(default_factory=time.time)
    proxy_start: float | None = None
    proxy_end: float | None = None
    client_end: float | None = None

    recorder_id: int | None = None
    error: Exception | None = None

    @classmethod
    def from_request(
        cls,
        req: RequestInfo,
        client_address: tuple | None = None,
        is_tls: bool = False,
    ) -> RequestContext:
        return cls(
            raw_req=req,
            req=req.copy(),
            client_address=client_address,
            is_tls=is_tls,
        )

    @property
    def url(self) -> str:
        return self.req.url


@dataclass
class ConnectContext:
    """
    A CONNECT request, before any tunnel exists.
    """

    host: str
    port: int
    http_version: str = "1.1"
    headers: Headers = field(default_factory=Headers)
    client_address: tuple | None = None
    should_intercept: bool = True

    @property
    def authority(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass
class WebSocketContext:
    """
    The upstream target of a WebSocket session. `before_ws_client` may rewrite any field.
    """

    url: str
    headers: Headers
    protocols: list[str] = field(default_factory=list)
    client_address: tuple | None = None

    @property
    def secure(self) -> bool:
        return urllib.parse.urlsplit(self.url).scheme == "wss"

    @property
    def hostname(self) -> str:
        return urllib.parse.urlsplit(self.url).hostname or ""

    @property
    def port(self) -> int:
        parts = urllib.parse.urlsplit(self.url)
        return parts.port or default_port(parts.scheme)

    @property
    def path(self) -> str:
        parts = urllib.parse.urlsplit(self.url)
        path = parts.path or "/"
        if parts.query:
            path += "?" + parts.query
        return path
