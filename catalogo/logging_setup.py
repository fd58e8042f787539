from __future__ import annotations

import logging

from catalogo.settings import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(settings: Settings) -> None:
    level = logging.getLevelName(str(settings.LOG_LEVEL or "INFO").strip().upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # SQL echo is noise at INFO
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
