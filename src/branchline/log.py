"""Logging setup for the command line."""

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(verbose: bool = False) -> None:
    """Route branchline loggers to stderr. Libraries embedding us should skip this."""
    level = logging.DEBUG if verbose else logging.WARNING
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger("branchline")
    root.handlers = [handler]
    root.setLevel(level)
    root.propagate = False
