from __future__ import annotations

import logging

from vestnik.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    level = logging.getLevelName(str(settings.log_level or "INFO").upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # httpx logs every request at INFO, which drowns the media proxy logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
