"""Logging configuration for pkgdash."""

import logging
import sys

logger = logging.getLogger("pkgdash")

# Plain messages for one-shot commands; level and timestamp for long-running ones
DEFAULT_FORMAT = "%(message)s"
VERBOSE_FORMAT = "%(levelname)s: %(message)s"
WATCH_FORMAT = "%(asctime)s %(levelname)s: %(message)s"
WATCH_DATE_FORMAT = "%H:%M:%S"


def _resolve_level(verbose: bool, quiet: bool) -> int:
    if quiet:
        return logging.WARNING
    if verbose:
        return logging.DEBUG
    return logging.INFO


def setup_logging(
    verbose: bool = False, quiet: bool = False, timestamps: bool = False
) -> None:
    """Configure the pkgdash logger for CLI use.

    Args:
        verbose: Show DEBUG messages, prefixed with their level.
        quiet: Only show WARNING and above. Wins over ``verbose``.
        timestamps: Prefix each line with the wall-clock time, used by
            ``pkgdash watch`` where refresh cycles run unattended.
    """
    logger.handlers.clear()

    level = _resolve_level(verbose, quiet)
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)

    if timestamps:
        formatter = logging.Formatter(WATCH_FORMAT, datefmt=WATCH_DATE_FORMAT)
    elif verbose:
        formatter = logging.Formatter(VERBOSE_FORMAT)
    else:
        formatter = logging.Formatter(DEFAULT_FORMAT)
    handler.setFormatter(formatter)

    logger.addHandler(handler)
    logger.setLevel(level)
