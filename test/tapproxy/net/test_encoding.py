import gzip

import pytest

from tapproxy.net import encoding


@pytest.mark.parametrize("encoder", ["identity", "none"])
def test_identity(encoder):
    assert b"string" == encoding.decode(b"string", encoder)
    assert b"string" == encoding.encode(b"string", encoder)
    with pytest.raises(ValueError):
        encoding.encode(b"string", "nonexistent encoding")


@pytest.mark.parametrize("encoder", ["gzip", "GZIP", "x-gzip", "br", "deflate"])
def test_decoders(encoder):
    raw = b"hello" * 100
    assert b"" == encoding.decode(b"", encoder)
    assert raw == encoding.decode(
        encoding.encode(raw, encoder.lower().replace("x-", "")), encoder
    )
    with pytest.raises(ValueError):
        encoding.decode(b"foobar", encoder)


def test_gzip_hello():
    assert encoding.decode(gzip.compress(b"hello"), "gzip") == b"hello"


def test_deflate_without_header():
    import zlib

    compressor = zlib.compressobj(wbits=-15)
    raw = compressor.compress(b"hello") + compressor.flush()
    assert encoding.decode(raw, "deflate") == b"hello"


def test_is_supported():
    assert encoding.is_supported("gzip")
    assert encoding.is_supported(" BR ")
    assert not encoding.is_supported("zstd")
    assert not encoding.is_supported("gzip, br")
