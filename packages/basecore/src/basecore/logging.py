"""
Logging setup for basecore services.

Services call setup_logging() once at startup and then use
logging.getLogger(__name__) everywhere. Structured context goes through
``extra={...}``; the json format renders it as top-level keys.
"""

import logging
import sys

from pythonjsonlogger import jsonlogger

from basecore.settings import get_settings

_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

_configured = False


class ExtraTextFormatter(logging.Formatter):
    """Plain text formatter that appends ``extra`` fields as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = {k: v for k, v in vars(record).items() if k not in _RESERVED_ATTRS}
        if extras:
            line += " " + " ".join(f"{k}={v}" for k, v in sorted(extras.items()))
        return line


def setup_logging(level: str | None = None, fmt: str | None = None) -> None:
    """
    Configure the root logger.

    Safe to call multiple times; only the first call installs a handler.

    Args:
        level: Log level name (defaults to LOG_LEVEL setting)
        fmt: "text" or "json" (defaults to LOG_FORMAT setting)
    """
    global _configured
    if _configured:
        return

    settings = get_settings()
    level = (level or settings.LOG_LEVEL).upper()
    fmt = fmt or settings.LOG_FORMAT

    handler = logging.StreamHandler(sys.stdout)
    if fmt == "json":
        handler.setFormatter(
            jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )
    else:
        handler.setFormatter(
            ExtraTextFormatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s")
        )

    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(level)

    # Quieter third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    _configured = True
