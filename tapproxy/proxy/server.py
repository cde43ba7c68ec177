"""
The proxy server owns the main listener and the resources shared by all
connections. Several ProxyServer instances can run side by side in one event
loop; nothing is global.
"""
from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from collections.abc import Iterator
from pathlib import Path

from tapproxy import certs
from tapproxy import exceptions
from tapproxy.net import streams
from tapproxy.options import CONF_BASENAME
from tapproxy.options import Options
from tapproxy.proxy.admin import AdminApi
from tapproxy.proxy.dispatcher import ConnectionDispatcher
from tapproxy.proxy.pipeline import Pipeline
from tapproxy.proxy.throttle import ThrottleGroup
from tapproxy.proxy.tls_pool import SharedTlsPool
from tapproxy.proxy.tls_pool import StreamHandler
from tapproxy.recorder import Recorder
from tapproxy.rules import RuleHolder
from tapproxy.utils import data
from tapproxy.utils import human

logger = logging.getLogger(__name__)


class SocketPool:
    """
    Registry of live client and tunnel connections, so that shutdown can
    destroy all of them at once.
    """

    def __init__(self) -> None:
        self._streams: dict[int, streams.Stream] = {}
        self._next_key = 0

    def __len__(self) -> int:
        return len(self._streams)

    def __repr__(self):
        return f"SocketPool({len(self._streams)} sockets)"

    def add(self, stream: streams.Stream) -> int:
        key = self._next_key
        self._next_key += 1
        self._streams[key] = stream
        return key

    def remove(self, key: int) -> None:
        self._streams.pop(key, None)

    @contextlib.contextmanager
    def register(self, stream: streams.Stream) -> Iterator[int]:
        key = self.add(stream)
        try:
            yield key
        finally:
            self.remove(key)

    def close_all(self) -> None:
        for stream in list(self._streams.values()):
            stream.close()
        self._streams.clear()


class ProxyResources:
    """
    The TLS listeners and sockets of one proxy instance.
    """

    def __init__(self, provider: certs.CertProvider, handler: StreamHandler):
        self.tls_pool = SharedTlsPool(provider, handler)
        self.socket_pool = SocketPool()

    def close(self) -> None:
        self.socket_pool.close_all()
        self.tls_pool.close()


class ProxyState(enum.Enum):
    INIT = "init"
    READY = "ready"
    CLOSED = "closed"


class ProxyServer:
    def __init__(
        self,
        options: Options,
        rules: RuleHolder | None = None,
        recorder: Recorder | None = None,
    ):
        self.options = options
        self.rules = rules if rules is not None else RuleHolder.from_source(options.rule)
        self.recorder = recorder
        self.state = ProxyState.INIT

        self.server: asyncio.Server | None = None
        self.resources: ProxyResources | None = None
        self.dispatcher: ConnectionDispatcher | None = None
        self._closed = asyncio.Event()

    def __repr__(self):
        return f"ProxyServer({self.state.value}, port={self.options.listen_port})"

    @property
    def listen_addrs(self) -> tuple[tuple, ...]:
        if self.server is None:
            return ()
        return tuple(sock.getsockname() for sock in self.server.sockets)

    @property
    def port(self) -> int:
        if addrs := self.listen_addrs:
            return addrs[0][1]
        return self.options.listen_port

    def validate(self) -> None:
        """
        Raises:
            OptionsError, if the proxy cannot start with the current options.
        """
        opts = self.options
        if not certs.ca_exists(opts.confdir, CONF_BASENAME):
            raise exceptions.OptionsError(
                "Root CA does not exist, please run `tapproxy-ca --generate` to create one."
            )
        if opts.listen_port is None:
            raise exceptions.OptionsError("A listen port is required.")
        if opts.proxy_type == "https" and not opts.proxy_hostname:
            raise exceptions.OptionsError(
                "The https proxy type requires proxy_hostname to be set."
            )

    def web_root(self) -> Path:
        if self.options.web_root:
            return Path(self.options.web_root).expanduser()
        return Path(data.pkg_data.path("web/static"))

    async def start(self) -> None:
        """
        Raises:
            ProxyStateError, if the proxy has been started before.
            OptionsError, if the configuration is invalid.
            ListenerError, if the main listener cannot be bound.
        """
        if self.state is not ProxyState.INIT:
            raise exceptions.ProxyStateError(
                f"Proxy can only be started once, current state: {self.state.value}."
            )
        self.validate()
        opts = self.options

        store = certs.CertStore.from_store(opts.confdir, CONF_BASENAME)
        throttle = ThrottleGroup.from_kbps(opts.throttle) if opts.throttle else None
        pipeline = Pipeline(
            self.rules,
            self.recorder,
            opts.chunk_size_limit,
            throttle=throttle,
            verify_upstream=not opts.ignore_unauthorized_ssl,
        )
        self.resources = ProxyResources(
            certs.CertProvider(store), self._handle_tls_stream
        )
        self.dispatcher = ConnectionDispatcher(
            opts,
            self.rules,
            pipeline,
            self.resources,
            AdminApi(self, self.web_root()),
        )

        try:
            self.server = await asyncio.start_server(
                self.dispatcher.handle_client, opts.listen_host or None, opts.listen_port
            )
        except OSError as e:
            self.resources.close()
            raise exceptions.ListenerError(
                f"{opts.proxy_type} proxy failed to listen on "
                f"{opts.listen_host or '*'}:{opts.listen_port} with {e}"
            ) from e
        self.state = ProxyState.READY

        addrs = " and ".join({human.format_address(a) for a in self.listen_addrs})
        logger.info(f"{opts.proxy_type} proxy listening at {addrs}.")
        logger.info(f"Active rule: {await self.rules.summary()}")
        if throttle:
            logger.info(f"Throttled to {opts.throttle} kb/s.")
        if not opts.intercept_https or opts.force_no_intercept:
            logger.info("HTTPS interception is disabled.")

    async def _handle_tls_stream(self, stream: streams.Stream) -> None:
        assert self.dispatcher
        await self.dispatcher.handle_tls_stream(stream)

    def reload_rule(self) -> bool:
        return self.rules.reload()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def run(self) -> None:
        await self.start()
        await self.wait_closed()

    async def close(self) -> None:
        """
        Stop immediately. In-flight requests are not drained.
        """
        if self.state is ProxyState.CLOSED:
            return
        self.state = ProxyState.CLOSED
        if self.resources:
            self.resources.close()
        if self.server:
            self.server.close()
        self._closed.set()
        logger.info("Proxy closed.")
