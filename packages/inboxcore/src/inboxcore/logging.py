"""
Logging setup.

Call setup_logging() once at process start (API, worker, CLI).
Modules then use logging.getLogger(__name__) and pass structured
fields through extra={...}.
"""

import json
import logging
import sys
from datetime import datetime

from inboxcore.settings import get_settings

# Attributes present on every LogRecord; anything else came from extra={...}
_RESERVED_ATTRS = set(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}

_configured = False


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON, including extra fields."""

    def format(self, record: logging.LogRecord) -> str:
        data = {
            "timestamp": datetime.utcfromtimestamp(record.created).isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                data[key] = value

        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(data, default=str)


def setup_logging(level: str | None = None, fmt: str | None = None) -> None:
    """
    Configure the root logger.

    Safe to call multiple times; only the first call installs handlers.
    """
    global _configured
    if _configured:
        return

    settings = get_settings()
    level = (level or settings.LOG_LEVEL).upper()
    fmt = fmt or settings.LOG_FORMAT

    handler = logging.StreamHandler(sys.stdout)
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
        )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.WARNING)

    _configured = True
