"""Logging setup."""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level=logging.INFO):
    """Configure the root logger once for the server process."""
    logging.basicConfig(level=level, format=LOG_FORMAT)


def get_logger(name):
    """Return a module logger."""
    return logging.getLogger(name)
