import argparse

from tapproxy import options
from tapproxy.tools import cmdline
from tapproxy.tools import main


def test_common():
    parser = argparse.ArgumentParser()
    opts = options.Options()
    cmdline.common_options(parser, opts)
    args = parser.parse_args(args=[])
    assert main.process_options(parser, opts, args) == "info"

    args = parser.parse_args(args=["-v"])
    assert main.process_options(parser, opts, args) == "debug"
    args = parser.parse_args(args=["-q"])
    assert main.process_options(parser, opts, args) == "error"


def test_tapproxy():
    opts = options.Options()
    ap = cmdline.tapproxy(opts)
    args = ap.parse_args(
        [
            "-p",
            "9000",
            "-t",
            "https",
            "--proxy-hostname",
            "proxy.test",
            "-r",
            "rule.py",
            "--throttle",
            "100",
            "-s",
            "--no-intercept-https",
            "-k",
            "--chunk-size-threshold",
            "1m",
        ]
    )
    main.process_options(ap, opts, args)
    assert opts.listen_port == 9000
    assert opts.proxy_type == "https"
    assert opts.proxy_hostname == "proxy.test"
    assert opts.rule == "rule.py"
    assert opts.throttle == 100
    assert opts.silent
    assert not opts.intercept_https
    assert opts.ignore_unauthorized_ssl
    assert opts.chunk_size_limit == 1024**2


def test_tapproxy_defaults_untouched():
    opts = options.Options()
    ap = cmdline.tapproxy(opts)
    main.process_options(ap, opts, ap.parse_args([]))
    assert opts.listen_port == options.DEFAULT_PORT
    assert opts.intercept_https


def test_tapproxy_ca():
    opts = options.Options()
    ap = cmdline.tapproxy_ca(opts)
    args = ap.parse_args(["--generate", "--force", "--confdir", "/tmp/x"])
    assert args.generate and args.force and not args.trust
    assert args.confdir == "/tmp/x"
