"""
Utility functions for decoding response bodies.
"""

import codecs
import gzip
import zlib
from io import BytesIO

import brotli


def decode(encoded: bytes, encoding: str) -> bytes:
    """
    Decode the given body according to a Content-Encoding value.

    Returns:
        The decoded value

    Raises:
        ValueError, if decoding fails.
    """
    if len(encoded) == 0:
        return encoded

    encoding = encoding.strip().lower()
    try:
        try:
            return custom_decode[encoding](encoded)
        except KeyError:
            return codecs.decode(encoded, encoding)
    except TypeError:
        raise
    except Exception as e:
        raise ValueError(
            "{} when decoding {} with {}: {}".format(
                type(e).__name__,
                repr(encoded)[:10],
                repr(encoding),
                repr(e),
            )
        )


def encode(decoded: bytes, encoding: str) -> bytes:
    """
    Encode the given body according to a Content-Encoding value.

    Raises:
        ValueError, if encoding fails.
    """
    if len(decoded) == 0:
        return decoded

    encoding = encoding.strip().lower()
    try:
        return custom_encode[encoding](decoded)
    except KeyError:
        raise ValueError(f"Unsupported content encoding: {encoding!r}")


def is_supported(encoding: str) -> bool:
    return encoding.strip().lower() in custom_decode


def identity(content):
    """
    Returns content unchanged. Identity is the default value of
    Accept-Encoding headers.
    """
    return content


def decode_gzip(content: bytes) -> bytes:
    gfile = gzip.GzipFile(fileobj=BytesIO(content))
    return gfile.read()


def encode_gzip(content: bytes) -> bytes:
    s = BytesIO()
    gf = gzip.GzipFile(fileobj=s, mode="wb")
    gf.write(content)
    gf.close()
    return s.getvalue()


def decode_brotli(content: bytes) -> bytes:
    return brotli.decompress(content)


def encode_brotli(content: bytes) -> bytes:
    return brotli.compress(content)


def decode_deflate(content: bytes) -> bytes:
    """
    Returns decompressed data for DEFLATE. Some servers may respond with
    compressed data without a zlib header or checksum. An undocumented
    feature of zlib permits the lenient decompression of data missing both
    values.

    http://bugs.python.org/issue5784
    """
    try:
        return zlib.decompress(content)
    except zlib.error:
        return zlib.decompress(content, -15)


def encode_deflate(content: bytes) -> bytes:
    """
    Returns compressed content, always including zlib header and checksum.
    """
    return zlib.compress(content)


custom_decode = {
    "none": identity,
    "identity": identity,
    "gzip": decode_gzip,
    "x-gzip": decode_gzip,
    "deflate": decode_deflate,
    "br": decode_brotli,
}
custom_encode = {
    "none": identity,
    "identity": identity,
    "gzip": encode_gzip,
    "deflate": encode_deflate,
    "br": encode_brotli,
}

__all__ = ["encode", "decode", "is_supported"]
