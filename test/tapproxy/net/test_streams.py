from tapproxy.net import streams


class Inner:
    is_tls = True
    reader = None
    writer = None

    def __init__(self):
        self.written = b""
        self.closed = False
        self.chunks = [b"rest"]

    async def read(self, n=65536):
        return self.chunks.pop(0) if self.chunks else b""

    def write(self, data):
        self.written += data

    def close(self):
        self.closed = True


async def test_prefixed_stream():
    inner = Inner()
    s = streams.PrefixedStream(inner, b"GET / HTTP/1.1\r\n")
    assert not s.is_tls
    assert await s.read(4) == b"GET "
    assert await s.read() == b"/ HTTP/1.1\r\n"
    assert await s.read() == b"rest"
    assert await s.read() == b""
    s.write(b"HTTP/1.1 101 Switching Protocols\r\n")
    assert inner.written.startswith(b"HTTP/1.1 101")
    s.close()
    assert inner.closed
