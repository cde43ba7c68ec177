"""
Local TLS listeners that terminate intercepted HTTPS connections.

A CONNECT tunnel that should be decrypted is spliced to one of these
listeners. Hostnames share a single listener that picks the certificate from
the SNI of each handshake, IP literals get a listener with a fixed
certificate each. Listeners are created lazily, at most once per key, and
live until the pool is closed.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from dataclasses import dataclass

from OpenSSL import SSL

from tapproxy import certs
from tapproxy import exceptions
from tapproxy.net import streams
from tapproxy.net import tls
from tapproxy.proxy.memoize import MemoizedTaskRunner
from tapproxy.utils import asyncio_utils
from tapproxy.utils import human

logger = logging.getLogger(__name__)

SNI_KEY = "sni"
"""The key of the listener shared by all hostnames."""

StreamHandler = Callable[[streams.Stream], Awaitable[None]]


@dataclass
class TlsListener:
    key: str
    server: asyncio.Server
    host: str
    port: int

    def close(self) -> None:
        self.server.close()


class SharedTlsPool:
    def __init__(
        self,
        provider: certs.CertProvider,
        handler: StreamHandler,
        host: str = "127.0.0.1",
    ):
        """
        Args:
            provider: issues the leaf certificates.
            handler: called with every decrypted client connection.
            host: the loopback address listeners bind to.
        """
        self.provider = provider
        self.handler = handler
        self.host = host
        self.listeners: dict[str, TlsListener] = {}
        self._listener_tasks = MemoizedTaskRunner()
        self._cert_tasks = MemoizedTaskRunner()
        self._connections: set[asyncio.Task] = set()

    def __repr__(self):
        return f"SharedTlsPool({len(self.listeners)} listeners)"

    async def get_server(self, hostname: str) -> tuple[str, int]:
        """
        Return the address of the listener that terminates TLS for `hostname`.

        Raises:
            CertificateIssueError, if no certificate can be issued for an IP literal.
            ListenerError, if the listener cannot be bound.
        """
        if human.is_ip_address(hostname):
            key = hostname.strip("[]")
            fixed_ip: str | None = key
        else:
            key = SNI_KEY
            fixed_ip = None
        listener = await self._listener_tasks.run(
            key, lambda: self._start_listener(key, fixed_ip)
        )
        return listener.host, listener.port

    async def issue(self, host: str) -> certs.CertStoreEntry:
        return await self._cert_tasks.run(host, lambda: self.provider.issue(host))

    async def _start_listener(self, key: str, fixed_ip: str | None) -> TlsListener:
        if fixed_ip is not None:
            # Issue up front, a failure must not leave a listener behind.
            await self.issue(fixed_ip)

            async def select_cert(sni: str | None) -> certs.CertStoreEntry:
                return await self.issue(fixed_ip)

        else:

            async def select_cert(sni: str | None) -> certs.CertStoreEntry:
                if not sni:
                    raise ConnectionError("Client did not send a server name (SNI).")
                return await self.issue(sni)

        async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
            await self._handle_connection(select_cert, reader, writer)

        try:
            server = await asyncio.start_server(handle, self.host, 0)
        except OSError as e:
            raise exceptions.ListenerError(
                f"Cannot bind TLS listener for {key} on {self.host}: {e}"
            ) from e
        port = server.sockets[0].getsockname()[1]
        listener = TlsListener(key, server, self.host, port)
        self.listeners[key] = listener
        logger.debug(f"TLS listener for {key} started on {self.host}:{port}.")
        return listener

    async def _handle_connection(
        self,
        select_cert: tls.CertSelector,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        task = asyncio.current_task()
        assert task
        asyncio_utils.set_task_debug_info(
            task, name="tls client handler", client=writer.get_extra_info("peername")
        )
        self._connections.add(task)
        try:
            try:
                stream = await tls.accept_tls(reader, writer, select_cert)
            except (
                ConnectionError,
                SSL.Error,
                exceptions.CertificateIssueError,
            ) as e:
                logger.info(f"TLS handshake failed: {e}")
                writer.close()
                return
            try:
                await self.handler(stream)
            finally:
                stream.close()
        finally:
            self._connections.discard(task)

    def close(self) -> None:
        """
        Close all listeners and the connections they accepted, without waiting for them to finish.
        """
        for listener in self.listeners.values():
            logger.debug(f"Closing TLS listener for {listener.key}.")
            listener.close()
        self.listeners.clear()
        for task in list(self._connections):
            task.cancel()
        self._connections.clear()
