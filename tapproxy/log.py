from __future__ import annotations

import logging
import os

import click

from tapproxy.utils import human

ALERT = logging.INFO + 1
"""
The ALERT logging level has the same urgency as info, but
signals that the user's attention should be drawn to the output.
"""
logging.addLevelName(ALERT, "ALERT")

LogLevels = [
    "error",
    "warn",
    "info",
    "alert",
    "debug",
]

LOG_COLORS = {logging.ERROR: "red", logging.WARNING: "yellow", ALERT: "magenta"}


class ProxyFormatter(logging.Formatter):
    def __init__(self, colorize: bool):
        super().__init__()
        self.colorize = colorize
        time = "[%s]"
        client = "[%s]"
        if colorize:
            time = click.style(time, fg="cyan", dim=True)
            client = click.style(client, fg="yellow", dim=True)

        self.with_client = f"{time}{client} %s"
        self.without_client = f"{time} %s"

    default_time_format = "%H:%M:%S"
    default_msec_format = "%s.%03d"

    def format(self, record: logging.LogRecord) -> str:
        time = self.formatTime(record)
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        if self.colorize:
            message = click.style(message, fg=LOG_COLORS.get(record.levelno))
        if client := getattr(record, "client", None):
            client = human.format_address(client)
            return self.with_client % (time, client, message)
        else:
            return self.without_client % (time, message)


class ProxyLogHandler(logging.Handler):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._initiated_in_test = os.environ.get("PYTEST_CURRENT_TEST")

    def filter(self, record: logging.LogRecord) -> bool:
        return bool(
            super().filter(record)
            and (
                not self._initiated_in_test
                or self._initiated_in_test == os.environ.get("PYTEST_CURRENT_TEST")
            )
        )

    def install(self) -> None:
        if self._initiated_in_test:
            for h in list(logging.getLogger().handlers):
                if (
                    isinstance(h, ProxyLogHandler)
                    and h._initiated_in_test != self._initiated_in_test
                ):
                    h.uninstall()

        logging.getLogger().addHandler(self)

    def uninstall(self) -> None:
        logging.getLogger().removeHandler(self)


class TermLogHandler(ProxyLogHandler):
    """
    Writes formatted log records to the terminal.
    Requests are logged at info level, so `silent` raises the threshold to warnings.
    """

    def __init__(self, verbosity: str = "info", silent: bool = False, out=None):
        super().__init__()
        self.out = out
        self.setLevel(log2level(verbosity))
        if silent:
            self.setLevel(max(self.level, logging.WARNING))
        self.setFormatter(ProxyFormatter(colorize=out is None and _stdout_isatty()))

    def emit(self, record: logging.LogRecord) -> None:
        click.echo(self.format(record), file=self.out, err=record.levelno >= logging.ERROR)


def _stdout_isatty() -> bool:
    return click.get_text_stream("stdout").isatty()


def log2level(level: str) -> int:
    if level == "warn":
        return logging.WARNING
    return logging.getLevelName(level.upper())
