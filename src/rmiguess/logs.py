"""Console logging with colored level prefixes."""

import logging
import sys

from termcolor import colored

_LEVEL_PREFIXES: dict[int, tuple[str, str]] = {
    logging.DEBUG: ("[.]", "blue"),
    logging.INFO: ("[+]", "green"),
    logging.WARNING: ("[!]", "yellow"),
    logging.ERROR: ("[-]", "red"),
    logging.CRITICAL: ("[-]", "red"),
}


class PrefixFormatter(logging.Formatter):
    """Prefix each record with a short marker, colored unless disabled."""

    _color: bool

    def __init__(self, color: bool = True) -> None:
        super().__init__("%(message)s")
        self._color = color

    def format(self, record: logging.LogRecord) -> str:
        prefix, color = _LEVEL_PREFIXES.get(record.levelno, ("[?]", "white"))
        if self._color is True:
            prefix = colored(prefix, color, attrs=["bold"])
        return f"{prefix} {super().format(record)}"


def setup_logging(verbose: bool = False, color: bool = True) -> logging.Handler:
    """Install one stderr handler on the package logger.

    :param verbose: Log debug messages.
    :param color: Color level prefixes.
    :returns: Installed handler.
    """
    package_logger: logging.Logger = logging.getLogger("rmiguess")
    for existing in list(package_logger.handlers):
        package_logger.removeHandler(existing)
    handler: logging.Handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(PrefixFormatter(color))
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG if verbose is True else logging.INFO)
    package_logger.propagate = False
    return handler
