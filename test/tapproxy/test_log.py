import io
import logging

from tapproxy import log


def make_record(msg="hello", level=logging.INFO, client=None):
    record = logging.LogRecord("tapproxy", level, __file__, 1, msg, (), None)
    if client:
        record.client = client
    return record


def test_formatter():
    f = log.ProxyFormatter(colorize=False)
    assert f.format(make_record()).endswith("] hello")
    assert "[127.0.0.1:8080] hello" in f.format(make_record(client=("127.0.0.1", 8080)))


def test_term_handler():
    out = io.StringIO()
    h = log.TermLogHandler("info", out=out)
    h.handle(make_record("shown"))
    h.handle(make_record("hidden", logging.DEBUG))
    assert "shown" in out.getvalue()
    assert "hidden" not in out.getvalue()


def test_silent():
    out = io.StringIO()
    h = log.TermLogHandler("debug", silent=True, out=out)
    h.handle(make_record("GET http://example.com/"))
    h.handle(make_record("oops", logging.WARNING))
    assert out.getvalue().count("\n") == 1
    assert "oops" in out.getvalue()


def test_log2level():
    assert log.log2level("warn") == logging.WARNING
    assert log.log2level("alert") == log.ALERT
    assert log.log2level("debug") == logging.DEBUG
