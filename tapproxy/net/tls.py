from __future__ import annotations

import asyncio
import contextlib
import io
import ipaddress
import struct
from collections.abc import Awaitable
from collections.abc import Callable
from collections.abc import Iterator
from enum import Enum
from functools import lru_cache

import certifi
from kaitaistruct import KaitaiStream
from OpenSSL import SSL
from OpenSSL import crypto

from tapproxy import certs
from tapproxy import exceptions
from tapproxy.contrib.kaitaistruct import tls_client_hello
from tapproxy.net.streams import Stream


class Version(Enum):
    UNBOUNDED = 0
    TLS1 = SSL.TLS1_VERSION
    TLS1_1 = SSL.TLS1_1_VERSION
    TLS1_2 = SSL.TLS1_2_VERSION
    TLS1_3 = SSL.TLS1_3_VERSION


DEFAULT_MIN_VERSION = Version.TLS1_2
DEFAULT_OPTIONS = SSL.OP_CIPHER_SERVER_PREFERENCE | SSL.OP_NO_COMPRESSION

DEFAULT_HOSTFLAGS = (
    SSL._lib.X509_CHECK_FLAG_NO_PARTIAL_WILDCARDS  # type: ignore
    | getattr(SSL._lib, "X509_CHECK_FLAG_NEVER_CHECK_SUBJECT", 0)  # type: ignore
)

# OpenSSL verify result codes, named the way other TLS stacks report them.
VERIFY_ERRORS = {
    2: "UNABLE_TO_GET_ISSUER_CERT",
    10: "CERT_HAS_EXPIRED",
    18: "DEPTH_ZERO_SELF_SIGNED_CERT",
    19: "SELF_SIGNED_CERT_IN_CHAIN",
    20: "UNABLE_TO_GET_ISSUER_CERT_LOCALLY",
    21: "UNABLE_TO_VERIFY_LEAF_SIGNATURE",
    62: "ERR_TLS_CERT_ALTNAME_INVALID",
}

CertSelector = Callable[[str | None], Awaitable[certs.CertStoreEntry]]


def _create_ssl_context(method: int, min_version: Version) -> SSL.Context:
    context = SSL.Context(method)
    context.set_min_proto_version(min_version.value)
    context.set_options(DEFAULT_OPTIONS)
    return context


def _alpn_select_callback(conn: SSL.Connection, options: list[bytes]) -> bytes:
    # We only speak HTTP/1.1 to the client.
    if b"http/1.1" in options:
        return b"http/1.1"
    return SSL.NO_OVERLAPPING_PROTOCOLS


@lru_cache(256)
def create_server_context(
    cert: certs.Cert,
    privatekey,
    min_version: Version = DEFAULT_MIN_VERSION,
) -> SSL.Context:
    context = _create_ssl_context(SSL.TLS_SERVER_METHOD, min_version)
    context.use_certificate(cert.to_pyopenssl())
    context.use_privatekey(crypto.PKey.from_cryptography_key(privatekey))
    context.check_privatekey()
    context.set_alpn_select_callback(_alpn_select_callback)
    return context


@lru_cache(4)
def create_client_context(verify: bool) -> SSL.Context:
    context = _create_ssl_context(SSL.TLS_CLIENT_METHOD, DEFAULT_MIN_VERSION)
    if verify:
        context.set_verify(SSL.VERIFY_PEER, None)
        try:
            context.load_verify_locations(certifi.where())
        except SSL.Error as e:
            raise RuntimeError(
                f"Cannot load trusted certificates ({certifi.where()})."
            ) from e
    else:
        context.set_verify(SSL.VERIFY_NONE, None)
    return context


def starts_like_tls_record(d: bytes) -> bool:
    """
    Returns:
        True, if the passed bytes could be the start of a TLS record
        False, otherwise.
    """
    # TLS ClientHello magic, works for SSLv3, TLSv1.0, TLSv1.1, TLSv1.2, and TLSv1.3
    # We assume that a client sending less than 3 bytes initially is not a TLS client.
    return len(d) > 2 and d[0] == 0x16 and d[1] == 0x03 and 0x00 <= d[2] <= 0x03


def handshake_record_contents(data: bytes) -> Iterator[bytes]:
    """
    Returns a generator that yields the bytes contained in each handshake record.
    This will raise an error on the first non-handshake record, so fully exhausting this
    generator is a bad idea.
    """
    offset = 0
    while True:
        if len(data) < offset + 5:
            return
        record_header = data[offset : offset + 5]
        if not starts_like_tls_record(record_header):
            raise ValueError(f"Expected TLS record, got {record_header!r} instead.")
        record_size = struct.unpack("!H", record_header[3:])[0]
        if record_size == 0:
            raise ValueError("Record must not be empty.")
        offset += 5

        if len(data) < offset + record_size:
            return
        record_body = data[offset : offset + record_size]
        yield record_body
        offset += record_size


def get_client_hello(data: bytes) -> bytes | None:
    """
    Read all TLS records that contain the initial ClientHello.
    Returns the raw handshake packet bytes, without TLS record headers.
    """
    client_hello = b""
    for d in handshake_record_contents(data):
        client_hello += d
        if len(client_hello) >= 4:
            client_hello_size = struct.unpack("!I", b"\x00" + client_hello[1:4])[0] + 4
            if len(client_hello) >= client_hello_size:
                return client_hello[:client_hello_size]
    return None


class ClientHello:
    """
    A TLS ClientHello, the first message sent by a client when initiating TLS.
    """

    _raw_bytes: bytes

    def __init__(self, raw_client_hello: bytes):
        """Create a ClientHello from the raw handshake body (without the handshake header)."""
        self._raw_bytes = raw_client_hello
        self._client_hello = tls_client_hello.TlsClientHello(
            KaitaiStream(io.BytesIO(raw_client_hello))
        )

    @property
    def cipher_suites(self) -> list[int]:
        return self._client_hello.cipher_suites.cipher_suites

    @property
    def sni(self) -> str | None:
        """
        The Server Name Indication, i.e. the host name the client wants to connect to.
        """
        if ext := getattr(self._client_hello, "extensions", None):
            for extension in ext.extensions:
                if (
                    extension.type == 0x00
                    and len(extension.body.server_names) == 1
                    and extension.body.server_names[0].name_type == 0
                ):
                    try:
                        return extension.body.server_names[0].host_name.decode("idna")
                    except UnicodeError:
                        return None
        return None

    @property
    def alpn_protocols(self) -> list[bytes]:
        if ext := getattr(self._client_hello, "extensions", None):
            for extension in ext.extensions:
                if extension.type == 0x10:
                    return list(x.name for x in extension.body.alpn_protocols)
        return []

    @property
    def extensions(self) -> list[tuple[int, bytes]]:
        """The raw list of extensions as `(extension_type, raw_bytes)` tuples."""
        ret = []
        if ext := getattr(self._client_hello, "extensions", None):
            for extension in ext.extensions:
                body = getattr(extension, "_raw_body", extension.body)
                ret.append((extension.type, body))
        return ret

    def __repr__(self):
        return f"ClientHello(sni: {self.sni}, alpn_protocols: {self.alpn_protocols})"


def parse_client_hello(data: bytes) -> ClientHello | None:
    """
    Check if the supplied bytes contain a full ClientHello message,
    and if so, parse it.

    Returns:
        - A ClientHello object on success
        - None, if the TLS record is not complete

    Raises:
        - A ValueError, if the passed ClientHello is invalid
    """
    client_hello = get_client_hello(data)
    if client_hello:
        if client_hello[0] != 0x01:
            raise ValueError(f"Expected ClientHello, got handshake type {client_hello[0]}.")
        try:
            return ClientHello(client_hello[4:])
        except EOFError as e:
            raise ValueError("Invalid ClientHello") from e
    return None


class TlsStream(Stream):
    """
    A TLS connection driven by pyOpenSSL on memory BIOs, on top of a raw reader/writer pair.
    """

    is_tls = True

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        conn: SSL.Connection,
    ):
        super().__init__(reader, writer)
        self.conn = conn
        self.sni: str | None = None
        self._eof = False

    def _flush(self) -> None:
        while True:
            try:
                data = self.conn.bio_read(65535)
            except SSL.WantReadError:
                return  # Okay, nothing more waiting to be sent.
            else:
                self.writer.write(data)

    async def _receive(self) -> bool:
        data = await self.reader.read(65536)
        if not data:
            self._eof = True
            return False
        self.conn.bio_write(data)
        return True

    async def handshake(self, initial_data: bytes = b"") -> None:
        # bio_write errors for b"", so we need to check first if we actually received something.
        if initial_data:
            self.conn.bio_write(initial_data)
        while True:
            try:
                self.conn.do_handshake()
            except SSL.WantReadError:
                self._flush()
                await self.writer.drain()
                if not await self._receive():
                    raise ConnectionError("Connection closed during TLS handshake.")
            else:
                break
        self._flush()
        await self.writer.drain()

    async def read(self, n: int = 65536) -> bytes:
        while True:
            try:
                data = self.conn.recv(n)
            except SSL.WantReadError:
                # TLS 1.3 may want to send session tickets before we read.
                self._flush()
                if self._eof or not await self._receive():
                    return b""
            except (SSL.ZeroReturnError, SSL.SysCallError):
                return b""
            except SSL.Error as e:
                raise ConnectionError(f"TLS error: {e}") from e
            else:
                return data

    def write(self, data: bytes) -> None:
        if not data:
            return
        try:
            self.conn.sendall(data)
        except SSL.Error as e:
            raise ConnectionError(f"TLS error: {e}") from e
        self._flush()

    def write_eof(self) -> None:
        # A TLS connection has no half-close, close_notify ends both directions.
        pass

    def close(self) -> None:
        if not self.writer.is_closing():
            with contextlib.suppress(SSL.Error):
                self.conn.shutdown()
                self._flush()
        super().close()


async def accept_tls(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    select_cert: CertSelector,
) -> TlsStream:
    """
    Terminate a client TLS connection. The ClientHello is read first so that the
    certificate can be selected asynchronously for the announced server name.

    Raises:
        ConnectionError, if the client goes away or does not speak TLS.
        SSL.Error, if the handshake fails.
    """
    data = b""
    while True:
        chunk = await reader.read(65536)
        if not chunk:
            raise ConnectionError("Connection closed before ClientHello.")
        data += chunk
        if len(data) >= 3 and not starts_like_tls_record(data):
            raise ConnectionError(f"Client does not speak TLS: {data[:8]!r}")
        try:
            client_hello = parse_client_hello(data)
        except ValueError as e:
            raise ConnectionError(str(e)) from e
        if client_hello:
            break

    sni = client_hello.sni
    entry = await select_cert(sni)

    conn = SSL.Connection(create_server_context(entry.cert, entry.privatekey))
    conn.set_accept_state()
    stream = TlsStream(reader, writer, conn)
    stream.sni = sni
    await stream.handshake(data)
    return stream


async def connect_tls(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    server_name: str,
    verify: bool = True,
) -> TlsStream:
    """
    Establish a client-side TLS connection to an upstream server.

    Raises:
        UpstreamError, if the handshake fails. Verification failures carry
        an OpenSSL-style error code.
    """
    conn = SSL.Connection(create_client_context(verify))
    conn.set_alpn_protos([b"http/1.1"])
    if verify:
        # Manually enable hostname verification.
        # https://wiki.openssl.org/index.php/Hostname_validation
        param = SSL._lib.SSL_get0_param(conn._ssl)  # type: ignore
        SSL._lib.X509_VERIFY_PARAM_set_hostflags(param, DEFAULT_HOSTFLAGS)  # type: ignore
    try:
        ip: bytes = ipaddress.ip_address(server_name.strip("[]")).packed
    except ValueError:
        host_name = server_name.encode("idna")
        conn.set_tlsext_host_name(host_name)
        if verify:
            ok = SSL._lib.X509_VERIFY_PARAM_set1_host(param, host_name, len(host_name))  # type: ignore
            SSL._openssl_assert(ok == 1)  # type: ignore
    else:
        # RFC 6066: Literal IPv4 and IPv6 addresses are not permitted in "HostName",
        # so we don't call set_tlsext_host_name.
        if verify:
            ok = SSL._lib.X509_VERIFY_PARAM_set1_ip(param, ip, len(ip))  # type: ignore
            SSL._openssl_assert(ok == 1)  # type: ignore
    conn.set_connect_state()

    stream = TlsStream(reader, writer, conn)
    stream.sni = server_name
    try:
        await stream.handshake()
    except SSL.Error as e:
        verify_result = SSL._lib.SSL_get_verify_result(conn._ssl)  # type: ignore
        if verify and verify_result != 0:
            error = SSL._ffi.string(  # type: ignore
                SSL._lib.X509_verify_cert_error_string(verify_result)  # type: ignore
            ).decode()
            raise exceptions.UpstreamError(
                f"Certificate verify failed for {server_name}: {error}",
                code=VERIFY_ERRORS.get(verify_result, "CERT_VERIFY_FAILED"),
            ) from e
        raise exceptions.UpstreamError(f"TLS handshake with {server_name} failed: {e}") from e
    return stream
