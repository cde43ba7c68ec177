from __future__ import annotations

import asyncio
import contextlib


class Stream:
    """
    A bidirectional byte stream on top of an asyncio reader/writer pair.

    The HTTP and WebSocket code only talks to this interface, so plain TCP
    connections and TLS-terminated connections (see `tapproxy.net.tls.TlsStream`)
    can be used interchangeably.
    """

    is_tls = False

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer

    def __repr__(self):
        return f"<{type(self).__name__} {self.peername}>"

    @property
    def peername(self) -> tuple | None:
        return self.writer.get_extra_info("peername")

    @property
    def sockname(self) -> tuple | None:
        return self.writer.get_extra_info("sockname")

    async def read(self, n: int = 65536) -> bytes:
        """Read up to n bytes. Returns b"" on EOF."""
        return await self.reader.read(n)

    def write(self, data: bytes) -> None:
        if data:
            self.writer.write(data)

    async def drain(self) -> None:
        await self.writer.drain()

    def is_closing(self) -> bool:
        return self.writer.is_closing()

    def write_eof(self) -> None:
        if self.writer.can_write_eof() and not self.writer.is_closing():
            with contextlib.suppress(OSError):
                self.writer.write_eof()

    def close(self) -> None:
        self.writer.close()

    async def wait_closed(self) -> None:
        with contextlib.suppress(OSError):
            await self.writer.wait_closed()


class PrefixedStream(Stream):
    """
    A view of another stream whose first reads return bytes that were already
    read from it. The view is never TLS, even if the stream below it is.
    """

    def __init__(self, stream: Stream, data: bytes):
        super().__init__(stream.reader, stream.writer)
        self.stream = stream
        self.data = data

    async def read(self, n: int = 65536) -> bytes:
        if self.data:
            data, self.data = self.data[:n], self.data[n:]
            return data
        return await self.stream.read(n)

    def write(self, data: bytes) -> None:
        self.stream.write(data)

    async def drain(self) -> None:
        await self.stream.drain()

    def write_eof(self) -> None:
        self.stream.write_eof()

    def close(self) -> None:
        self.stream.close()


async def open_stream(host: str, port: int) -> Stream:
    reader, writer = await asyncio.open_connection(host, port)
    return Stream(reader, writer)
