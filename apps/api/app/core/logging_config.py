"""Process-wide logging setup, selected once at startup."""
from __future__ import annotations

import logging

from .config import Settings

CONSOLE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
STRUCTURED_FORMAT = "ts=%(asctime)s level=%(levelname)s logger=%(name)s msg=%(message)r"

_configured = False


def configure_logging(settings: Settings) -> None:
    """Install the root handler for the current environment.

    Development gets a readable console format; every other environment gets a
    single-line key=value format that log shippers can parse.
    """

    global _configured
    if _configured:
        return

    fmt = STRUCTURED_FORMAT if settings.is_production else CONSOLE_FORMAT
    level = logging.getLevelName(settings.log_level.strip().upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(level=level, format=fmt)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True
