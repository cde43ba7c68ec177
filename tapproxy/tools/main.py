from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from collections.abc import Sequence

from tapproxy import certs
from tapproxy import exceptions
from tapproxy import log
from tapproxy import options
from tapproxy import optmanager
from tapproxy import version
from tapproxy.proxy.server import ProxyServer
from tapproxy.recorder import Recorder
from tapproxy.tools import cmdline


def process_options(parser, opts, args) -> str:
    """
    Apply the command line to the options. Returns the terminal log verbosity.
    """
    if args.version:
        print(version.get_dev_version())
        sys.exit(0)
    verbosity = "info"
    if args.quiet or args.options:
        # --options prints to stdout, keep startup messages out of it.
        verbosity = "error"
    if args.verbose:
        verbosity = "debug"

    adict = {
        key: val for key, val in vars(args).items() if key in opts and val is not None
    }
    opts.update(**adict)
    return verbosity


def configure_logging(verbosity: str, silent: bool = False) -> log.TermLogHandler:
    logging.getLogger().setLevel(logging.DEBUG)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("tornado").setLevel(logging.WARNING)
    handler = log.TermLogHandler(verbosity, silent=silent)
    handler.install()
    return handler


def load_options(
    parser: argparse.ArgumentParser, opts: options.Options, arguments: Sequence[str] | None
) -> tuple[argparse.Namespace, str]:
    args = parser.parse_args(arguments)
    try:
        opts.set(*args.setoptions)
        if args.confdir:
            opts.update(confdir=args.confdir)
        optmanager.load_paths(
            opts,
            os.path.join(opts.confdir, "config.yaml"),
            os.path.join(opts.confdir, "config.yml"),
        )
        verbosity = process_options(parser, opts, args)
        if args.options:
            optmanager.dump_defaults(opts, sys.stdout)
            sys.exit(0)
    except exceptions.OptionsError as e:
        print(f"{sys.argv[0]}: {e}", file=sys.stderr)
        sys.exit(1)
    return args, verbosity


def run(arguments: Sequence[str] | None = None) -> ProxyServer:  # pragma: no cover
    async def main() -> ProxyServer:
        opts = options.Options()
        parser = cmdline.tapproxy(opts)
        args, verbosity = load_options(parser, opts, arguments)
        configure_logging(verbosity, silent=opts.silent)

        try:
            proxy = ProxyServer(opts, recorder=Recorder())
            await proxy.start()
        except exceptions.TapproxyException as e:
            print(f"{sys.argv[0]}: {e}", file=sys.stderr)
            sys.exit(1)

        loop = asyncio.get_running_loop()

        def _shutdown(*_):
            loop.call_soon_threadsafe(lambda: asyncio.ensure_future(proxy.close()))

        # loop.add_signal_handler is not available on Windows' Proactorloop,
        # signal.signal works for our purposes.
        signal.signal(signal.SIGINT, _shutdown)
        signal.signal(signal.SIGTERM, _shutdown)
        if hasattr(signal, "SIGPIPE"):
            signal.signal(signal.SIGPIPE, signal.SIG_IGN)

        await proxy.wait_closed()
        return proxy

    return asyncio.run(main())


def tapproxy(args=None) -> int | None:  # pragma: no cover
    run(args)
    return None


def tapproxy_ca(args=None) -> int | None:
    opts = options.Options()
    parser = cmdline.tapproxy_ca(opts)
    parsed = parser.parse_args(args)
    if parsed.confdir:
        opts.update(confdir=parsed.confdir)
    configure_logging(parsed.verbose or "info")
    confdir = opts.confdir
    basename = options.CONF_BASENAME

    try:
        if parsed.generate:
            certs.generate_root_ca(
                confdir, basename, options.KEY_SIZE, overwrite=parsed.force
            )
        if parsed.trust:
            certs.trust_root_ca(confdir, basename)
    except exceptions.CertificateIssueError as e:
        print(f"{sys.argv[0]}: {e}", file=sys.stderr)
        return 1

    if not certs.ca_exists(confdir, basename):
        print(f"No root CA in {confdir}. Run with --generate to create one.")
    else:
        trusted = certs.is_ca_trusted(confdir, basename)
        print(f"Root CA: {certs.ca_cert_path(confdir, basename)}")
        print(f"Trusted: {'yes' if trusted else 'no'}")
    return 0
