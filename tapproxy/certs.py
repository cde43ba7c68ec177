from __future__ import annotations

import contextlib
import datetime
import ipaddress
import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

import OpenSSL
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509 import ExtendedKeyUsageOID
from cryptography.x509 import NameOID

from tapproxy import exceptions
from tapproxy.utils import human

logger = logging.getLogger(__name__)

# Default expiry must not be too long, clients reject leaf certs valid for more than ~13 months.
CA_EXPIRY = datetime.timedelta(days=10 * 365)
CERT_EXPIRY = datetime.timedelta(days=365)


class Cert:
    """Representation of a (TLS) certificate."""

    _cert: x509.Certificate

    def __init__(self, cert: x509.Certificate):
        assert isinstance(cert, x509.Certificate)
        self._cert = cert

    def __eq__(self, other):
        return self.fingerprint() == other.fingerprint()

    def __repr__(self):
        return f"<Cert(cn={self.cn!r}, altnames={self.altnames!r})>"

    def __hash__(self):
        return self._cert.__hash__()

    @classmethod
    def from_pem(cls, data: bytes) -> Cert:
        cert = x509.load_pem_x509_certificate(data)
        return cls(cert)

    def to_pem(self) -> bytes:
        return self._cert.public_bytes(serialization.Encoding.PEM)

    def to_pyopenssl(self) -> OpenSSL.crypto.X509:
        return OpenSSL.crypto.X509.from_cryptography(self._cert)

    def to_cryptography(self) -> x509.Certificate:
        return self._cert

    def fingerprint(self) -> bytes:
        return self._cert.fingerprint(hashes.SHA256())

    @property
    def issuer_cn(self) -> str | None:
        attrs = self._cert.issuer.get_attributes_for_oid(NameOID.COMMON_NAME)
        if attrs:
            return attrs[0].value
        return None

    @property
    def cn(self) -> str | None:
        attrs = self._cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        if attrs:
            return attrs[0].value
        return None

    @property
    def altnames(self) -> list[str]:
        """
        Get all SubjectAlternativeName DNS altnames.
        """
        try:
            ext = self._cert.extensions.get_extension_for_class(
                x509.SubjectAlternativeName
            ).value
        except x509.ExtensionNotFound:
            return []
        else:
            return ext.get_values_for_type(x509.DNSName) + [
                str(x) for x in ext.get_values_for_type(x509.IPAddress)
            ]


def create_ca(
    organization: str,
    cn: str,
    key_size: int,
) -> tuple[rsa.RSAPrivateKey, x509.Certificate]:
    now = datetime.datetime.now(datetime.timezone.utc)

    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=key_size,
    )
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, cn),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
        ]
    )
    builder = x509.CertificateBuilder()
    builder = builder.serial_number(x509.random_serial_number())
    builder = builder.subject_name(name)
    builder = builder.not_valid_before(now - datetime.timedelta(days=2))
    builder = builder.not_valid_after(now + CA_EXPIRY)
    builder = builder.issuer_name(name)
    builder = builder.public_key(private_key.public_key())
    builder = builder.add_extension(
        x509.BasicConstraints(ca=True, path_length=None), critical=True
    )
    builder = builder.add_extension(
        x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
    )
    builder = builder.add_extension(
        x509.KeyUsage(
            digital_signature=False,
            content_commitment=False,
            key_encipherment=False,
            data_encipherment=False,
            key_agreement=False,
            key_cert_sign=True,
            crl_sign=True,
            encipher_only=False,
            decipher_only=False,
        ),
        critical=True,
    )
    builder = builder.add_extension(
        x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()),
        critical=False,
    )
    cert = builder.sign(private_key=private_key, algorithm=hashes.SHA256())
    return private_key, cert


def dummy_cert(
    privkey: rsa.RSAPrivateKey,
    cacert: x509.Certificate,
    commonname: str | None,
    sans: list[str],
) -> Cert:
    """
    Generates a leaf certificate for the given names, signed by the CA.
    The leaf reuses the CA key pair, so no key generation happens per host.

    privkey: CA private key
    cacert: CA certificate
    commonname: Common name for the generated certificate.
    sans: A list of Subject Alternate Names.
    """
    builder = x509.CertificateBuilder()
    builder = builder.issuer_name(cacert.subject)
    builder = builder.add_extension(
        x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
    )
    builder = builder.public_key(cacert.public_key())
    builder = builder.add_extension(
        x509.AuthorityKeyIdentifier.from_issuer_public_key(cacert.public_key()),  # type: ignore[arg-type]
        critical=False,
    )

    now = datetime.datetime.now(datetime.timezone.utc)
    builder = builder.not_valid_before(now - datetime.timedelta(days=2))
    builder = builder.not_valid_after(now + CERT_EXPIRY)

    subject = []
    is_valid_commonname = commonname is not None and len(commonname) < 64
    if is_valid_commonname:
        assert commonname is not None
        subject.append(x509.NameAttribute(NameOID.COMMON_NAME, commonname))
    builder = builder.subject_name(x509.Name(subject))
    builder = builder.serial_number(x509.random_serial_number())

    ss: list[x509.GeneralName] = []
    for x in sans:
        try:
            ip = ipaddress.ip_address(x)
        except ValueError:
            ss.append(x509.DNSName(x))
        else:
            ss.append(x509.IPAddress(ip))
    # RFC 5280 §4.2.1.6: subjectAltName is critical if subject is empty.
    builder = builder.add_extension(
        x509.SubjectAlternativeName(ss), critical=not is_valid_commonname
    )
    cert = builder.sign(private_key=privkey, algorithm=hashes.SHA256())
    return Cert(cert)


@dataclass(frozen=True)
class CertStoreEntry:
    cert: Cert
    privatekey: rsa.RSAPrivateKey

    def key_pem(self) -> bytes:
        return self.privatekey.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )


class CertStore:
    """
    Implements an in-memory certificate store, backed by a root CA on disk.
    """

    STORE_CAP = 100
    certs: dict[str, CertStoreEntry]
    expire_queue: list[CertStoreEntry]

    def __init__(
        self,
        default_privatekey: rsa.RSAPrivateKey,
        default_ca: Cert,
    ):
        self.default_privatekey = default_privatekey
        self.default_ca = default_ca
        self.certs = {}
        self.expire_queue = []

    def expire(self, entry: CertStoreEntry) -> None:
        self.expire_queue.append(entry)
        if len(self.expire_queue) > self.STORE_CAP:
            d = self.expire_queue.pop(0)
            self.certs = {k: v for k, v in self.certs.items() if v != d}

    @classmethod
    def from_store(
        cls,
        path: Path | str,
        basename: str,
        passphrase: bytes | None = None,
    ) -> CertStore:
        """
        Load the root CA from `path`. Raises a CertificateIssueError if it does not exist.
        """
        ca_file = Path(path).expanduser() / f"{basename}-ca.pem"
        if not ca_file.exists():
            raise exceptions.CertificateIssueError(
                f"Root CA not found at {ca_file}. Run `tapproxy-ca --generate` to create one."
            )
        raw = ca_file.read_bytes()
        key = load_pem_private_key(raw, passphrase)
        ca = Cert.from_pem(raw)
        return cls(key, ca)

    @staticmethod
    @contextlib.contextmanager
    def umask_secret():
        """
        Context to temporarily set umask to its original value bitor 0o77.
        Useful when writing private keys to disk so that only the owner
        will be able to read them.
        """
        original_umask = os.umask(0)
        os.umask(original_umask | 0o77)
        try:
            yield
        finally:
            os.umask(original_umask)

    @staticmethod
    def create_store(
        path: Path, basename: str, key_size: int, organization=None, cn=None
    ) -> None:
        path.mkdir(parents=True, exist_ok=True)

        organization = organization or basename
        cn = cn or basename

        key, ca = create_ca(organization=organization, cn=cn, key_size=key_size)

        # Dump the CA plus private key.
        with CertStore.umask_secret():
            (path / f"{basename}-ca.pem").write_bytes(
                key.private_bytes(
                    encoding=serialization.Encoding.PEM,
                    format=serialization.PrivateFormat.TraditionalOpenSSL,
                    encryption_algorithm=serialization.NoEncryption(),
                )
                + ca.public_bytes(serialization.Encoding.PEM)
            )

        # Dump the certificate in PEM format
        pem_cert = ca.public_bytes(serialization.Encoding.PEM)
        (path / f"{basename}-ca-cert.pem").write_bytes(pem_cert)
        # Create a .cer file with the same contents for Android
        (path / f"{basename}-ca-cert.cer").write_bytes(pem_cert)

        # Dump the certificate in PKCS12 format for Windows devices
        (path / f"{basename}-ca-cert.p12").write_bytes(
            pkcs12.serialize_key_and_certificates(
                name=basename.encode(),
                key=None,
                cert=ca,
                cas=None,
                encryption_algorithm=serialization.NoEncryption(),
            )
        )

    def get_cert(self, commonname: str | None, sans: list[str]) -> CertStoreEntry:
        """
        commonname: Common name for the generated certificate. Must be a
        valid, plain-ASCII, IDNA-encoded domain name or an IP address.

        sans: A list of Subject Alternate Names.
        """
        key = commonname or ",".join(sans)
        entry = self.certs.get(key)
        if entry is None:
            entry = CertStoreEntry(
                cert=dummy_cert(
                    self.default_privatekey,
                    self.default_ca.to_cryptography(),
                    commonname,
                    sans,
                ),
                privatekey=self.default_privatekey,
            )
            self.certs[key] = entry
            self.expire(entry)
        return entry


class CertProvider:
    """
    Issues leaf certificates for hostnames and IP addresses on demand.

    `issue` is idempotent: repeated calls for the same host return the cached entry.
    """

    def __init__(self, store: CertStore):
        self.store = store

    async def issue(self, host: str) -> CertStoreEntry:
        host = host.strip("[]")
        try:
            if not human.is_ip_address(host):
                host = host.encode("idna").decode("ascii")
            return self.store.get_cert(host, [host])
        except (ValueError, UnicodeError) as e:
            raise exceptions.CertificateIssueError(
                f"Cannot issue certificate for {host!r}: {e}"
            ) from e


def load_pem_private_key(data: bytes, password: bytes | None) -> rsa.RSAPrivateKey:
    """
    like cryptography's load_pem_private_key, but silently falls back to not using a password
    if the private key is unencrypted.
    """
    try:
        return serialization.load_pem_private_key(data, password)  # type: ignore
    except TypeError:
        if password is not None:
            return load_pem_private_key(data, None)
        raise


# Root CA lifecycle


def ca_path(confdir: Path | str, basename: str) -> Path:
    return Path(confdir).expanduser() / f"{basename}-ca.pem"


def ca_cert_path(confdir: Path | str, basename: str) -> Path:
    return Path(confdir).expanduser() / f"{basename}-ca-cert.pem"


def ca_exists(confdir: Path | str, basename: str) -> bool:
    return ca_path(confdir, basename).exists()


def generate_root_ca(
    confdir: Path | str, basename: str, key_size: int, overwrite: bool = False
) -> Path:
    """
    Create a new root CA in `confdir`. Returns the path of the public certificate.
    """
    if ca_exists(confdir, basename) and not overwrite:
        raise exceptions.CertificateIssueError(
            f"Root CA already exists at {ca_path(confdir, basename)}."
        )
    CertStore.create_store(
        Path(confdir).expanduser(),
        basename,
        key_size,
        organization=basename,
        cn=f"{basename} root CA",
    )
    logger.info(f"Root CA generated at {ca_cert_path(confdir, basename)}")
    return ca_cert_path(confdir, basename)


def is_ca_trusted(confdir: Path | str, basename: str) -> bool:
    """
    Check whether the root CA is trusted by the system keychain.
    Only implemented on macOS, other platforms always report False.
    """
    if sys.platform != "darwin" or not ca_exists(confdir, basename):
        return False
    proc = subprocess.run(
        ["security", "verify-cert", "-c", str(ca_cert_path(confdir, basename))],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    return proc.returncode == 0


def trust_root_ca(confdir: Path | str, basename: str) -> bool:
    """
    Install the root CA into the system trust store.
    Returns True on success. Only macOS is automated, elsewhere the user gets instructions.
    """
    cert = ca_cert_path(confdir, basename)
    if not cert.exists():
        raise exceptions.CertificateIssueError(
            f"Root CA not found at {cert}. Run `tapproxy-ca --generate` first."
        )
    if sys.platform != "darwin":
        logger.warning(
            f"Please trust {cert} manually in your operating system or browser."
        )
        return False
    proc = subprocess.run(
        [
            "sudo",
            "security",
            "add-trusted-cert",
            "-d",
            "-r",
            "trustRoot",
            "-k",
            "/Library/Keychains/System.keychain",
            str(cert),
        ],
    )
    if proc.returncode != 0:
        logger.error(f"Failed to trust root CA {cert} (exit code {proc.returncode}).")
        return False
    logger.info("Root CA is now trusted.")
    return True
