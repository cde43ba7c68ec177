import argparse


def common_options(parser, opts):
    parser.add_argument(
        "--version",
        action="store_true",
        help="show version number and exit",
        dest="version",
    )
    parser.add_argument(
        "--options",
        action="store_true",
        help="Show all options and their default values",
    )
    parser.add_argument(
        "--set",
        type=str,
        dest="setoptions",
        default=[],
        action="append",
        metavar="option[=value]",
        help="""
            Set an option. When the value is omitted, booleans are set to true,
            strings and integers are set to None (if permitted).
            Boolean values can be true, false or toggle.
        """,
    )
    parser.add_argument(
        "-q", "--quiet", action="store_true", dest="quiet", help="Quiet."
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_const",
        dest="verbose",
        const="debug",
        help="Increase log verbosity.",
    )
    opts.make_parser(parser, "confdir", metavar="PATH")


def tapproxy(opts):
    parser = argparse.ArgumentParser(usage="%(prog)s [options]")
    common_options(parser, opts)

    group = parser.add_argument_group("Proxy Options")
    opts.make_parser(group, "listen_host", metavar="HOST")
    opts.make_parser(group, "listen_port", metavar="PORT", short="p")
    opts.make_parser(group, "proxy_type", short="t")
    opts.make_parser(group, "proxy_hostname", metavar="HOST")
    opts.make_parser(group, "rule", metavar="RULE", short="r")
    opts.make_parser(group, "throttle", metavar="KBPS")
    opts.make_parser(group, "silent", short="s")

    group = parser.add_argument_group("SSL")
    opts.make_parser(group, "intercept_https")
    opts.make_parser(group, "force_no_intercept")
    opts.make_parser(group, "ignore_unauthorized_ssl", short="k")

    group = parser.add_argument_group("Inspection")
    opts.make_parser(group, "chunk_size_threshold", metavar="SIZE")
    opts.make_parser(group, "web_root", metavar="PATH")
    return parser


def tapproxy_ca(opts):
    parser = argparse.ArgumentParser(
        usage="%(prog)s [options]",
        description="Manage the root certificate authority used for HTTPS interception.",
    )
    parser.add_argument(
        "--generate",
        action="store_true",
        help="Generate a new root CA in the configuration directory.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing root CA when generating.",
    )
    parser.add_argument(
        "--trust",
        action="store_true",
        help="Install the root CA into the system trust store (macOS only).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_const",
        dest="verbose",
        const="debug",
        help="Increase log verbosity.",
    )
    opts.make_parser(parser, "confdir", metavar="PATH")
    return parser
