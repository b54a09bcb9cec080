"""Tenant instance provisioning: database schema + partitioned storage."""

from __future__ import annotations

import logging
import os
import sys

__version__ = "0.1.0"

_LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"
_LOGGER_NAME = "instance_provisioner"
_handler: logging.Handler | None = None


def configure_logging(level: str | int | None = None) -> bool:
    """Send this package's log records to stderr.

    *level* wins over the ``PROVISIONING_LOG`` environment variable. With
    neither set nothing changes and ``False`` is returned. The root logger is
    never touched, so a host's own logging setup keeps working. Called from
    ``config.build_provisioner``.
    """
    global _handler

    if level is None:
        level = os.environ.get("PROVISIONING_LOG") or None
    if level is None:
        return False
    if isinstance(level, str):
        name = level.upper()
        if name not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {level!r}")
        level = logging.getLevelNamesMapping()[name]

    logger = logging.getLogger(_LOGGER_NAME)
    if _handler is not None:
        logger.removeHandler(_handler)
    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    logger.addHandler(_handler)
    logger.setLevel(level)
    return True
