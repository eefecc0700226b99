from __future__ import annotations

import logging

from neurox.core.config import get_settings


def configure_logging(level: str | None = None) -> None:
    # Entry points call this once; library modules only create loggers.
    resolved = (level or get_settings().log_level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, resolved, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
