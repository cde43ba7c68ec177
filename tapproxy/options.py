from typing import Optional

from tapproxy import exceptions
from tapproxy import optmanager
from tapproxy.utils import human

CONF_DIR = "~/.tapproxy"
CONF_BASENAME = "tapproxy"
KEY_SIZE = 2048
DEFAULT_PORT = 8001
CHUNK_SIZE_THRESHOLD = "20m"


class Options(optmanager.OptManager):
    def __init__(self, **kwargs) -> None:
        super().__init__()
        self.add_option(
            "listen_host",
            str,
            "",
            "Address to bind proxy server to.",
        )
        self.add_option(
            "listen_port",
            int,
            DEFAULT_PORT,
            "Proxy service port.",
        )
        self.add_option(
            "proxy_type",
            str,
            "http",
            """
            Type of the main proxy listener. An https proxy terminates TLS on
            the listening socket itself, using a certificate for proxy_hostname.
            """,
            choices=("http", "https"),
        )
        self.add_option(
            "proxy_hostname",
            Optional[str],
            None,
            "Hostname the proxy is reachable at. Required for the https proxy type.",
        )
        self.add_option(
            "confdir",
            str,
            CONF_DIR,
            "Location of the default tapproxy configuration files and root CA.",
        )
        self.add_option(
            "rule",
            Optional[str],
            None,
            """
            Rule to apply to intercepted traffic, either the path to a Python
            file or a dotted module name.
            """,
        )
        self.add_option(
            "throttle",
            Optional[int],
            None,
            "Throttle the speed of intercepted traffic to this many kb/s.",
        )
        self.add_option(
            "intercept_https",
            bool,
            True,
            """
            Decrypt HTTPS traffic by default. Rules may still decide per host
            through is_deal_connect.
            """,
        )
        self.add_option(
            "force_no_intercept",
            bool,
            False,
            "Never decrypt HTTPS traffic, regardless of what the rule says.",
        )
        self.add_option(
            "ignore_unauthorized_ssl",
            bool,
            False,
            """
            Do not verify upstream server SSL/TLS certificates. Dangerous, use
            only for hosts you trust.
            """,
        )
        self.add_option(
            "chunk_size_threshold",
            str,
            CHUNK_SIZE_THRESHOLD,
            """
            Response bodies that grow beyond this size are streamed to the
            client instead of being buffered and decoded. Understands k/m/g
            suffixes, e.g. 20m.
            """,
        )
        self.add_option(
            "silent",
            bool,
            False,
            "Do not print request logs to the terminal.",
        )
        self.add_option(
            "web_root",
            Optional[str],
            None,
            "Directory served below /__tapproxy/web/. Defaults to the bundled assets.",
        )
        self.subscribe(_check_options, ["throttle", "chunk_size_threshold"])
        self.update(**kwargs)

    @property
    def chunk_size_limit(self) -> int:
        size = human.parse_size(self.chunk_size_threshold)
        assert size is not None
        return size


def _check_options(opts: Options, updated: set[str]) -> None:
    if opts.throttle is not None and opts.throttle < 1:
        raise exceptions.OptionsError(
            "Invalid throttle rate value, should be a positive integer."
        )
    try:
        human.parse_size(opts.chunk_size_threshold)
    except ValueError as e:
        raise exceptions.OptionsError(
            f"Invalid chunk_size_threshold specification: {opts.chunk_size_threshold}"
        ) from e
