import pytest

from tapproxy.context import ConnectContext
from tapproxy.context import RequestContext
from tapproxy.context import RequestInfo
from tapproxy.context import WebSocketContext
from tapproxy.context import split_host_header
from tapproxy.net.http.headers import Headers


@pytest.mark.parametrize(
    "value, expected",
    [
        ("example.com", ("example.com", 80)),
        ("example.com:8080", ("example.com", 8080)),
        ("[::1]:8443", ("::1", 8443)),
        ("[::1]", ("::1", 80)),
        ("::1", ("::1", 80)),
    ],
)
def test_split_host_header(value, expected):
    assert split_host_header(value, 80) == expected


def test_split_host_header_invalid():
    with pytest.raises(ValueError):
        split_host_header("example.com:http", 80)


def test_request_info():
    req = RequestInfo("GET", "https://example.com:8443/a/b?c=d", Headers(host="x"))
    assert req.protocol == "https"
    assert req.hostname == "example.com"
    assert req.port == 8443
    assert req.path == "/a/b?c=d"
    assert req.authority == "example.com:8443"

    req = RequestInfo("GET", "http://example.com", Headers())
    assert req.port == 80
    assert req.path == "/"


def test_request_context_copies():
    req = RequestInfo("POST", "http://example.com/", Headers(a="1"), body=b"x")
    ctx = RequestContext.from_request(req, ("127.0.0.1", 5000), is_tls=True)
    ctx.req.headers["a"] = "2"
    assert ctx.raw_req.headers["a"] == "1"
    assert ctx.res.status_code is None
    assert ctx.url == "http://example.com/"
    assert ctx.is_tls


def test_connect_context():
    assert ConnectContext("example.com", 443).authority == "example.com:443"
    assert ConnectContext("::1", 443).authority == "[::1]:443"


def test_websocket_context():
    ctx = WebSocketContext("wss://example.com/chat?room=1", Headers())
    assert ctx.secure
    assert ctx.port == 443
    assert ctx.path == "/chat?room=1"
    assert not WebSocketContext("ws://example.com:81", Headers()).secure
