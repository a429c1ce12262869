"""Logging initialization."""

import logging

from voice_gateway.core.config import settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging() -> None:
    level = (settings.LOG_LEVEL or "INFO").strip().upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # websockets logs every frame at DEBUG; keep it out of application debug output
    if level == "DEBUG":
        logging.getLogger("websockets").setLevel(logging.INFO)
