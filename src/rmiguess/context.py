"""Per-run presentation and trust settings passed explicitly to the reporting code."""

import logging
import re
from dataclasses import dataclass

logger: logging.Logger = logging.getLogger(__name__)

_SAFE_BOUND_NAME: re.Pattern[str] = re.compile(r"^[a-zA-Z0-9_\-.:/]+$")


@dataclass(frozen=True)
class ScanContext:
    """Settings that used to be process-wide toggles.

    ``trusted`` disables bound name filtering, ``stack_trace`` logs remote
    cause chains and ``color`` enables colored output.
    """

    trusted: bool = False
    stack_trace: bool = False
    color: bool = True


def filter_bound_names(names: list[str], context: ScanContext) -> list[str]:
    """Drop bound names with characters that could mess up terminal output.

    :param names: Names returned by the registry.
    :param context: Run context.
    :returns: Names safe to print and use, all names when running trusted.
    """
    if context.trusted is True:
        return list(names)
    accepted: list[str] = []
    for name in names:
        if _SAFE_BOUND_NAME.match(name) is None:
            logger.warning("Skipping bound name %r with unusual characters (use --trusted to keep it)", name)
            continue
        accepted.append(name)
    return accepted
