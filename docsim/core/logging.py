"""Process-wide logging setup shared by the API and the Celery worker."""

from __future__ import annotations

import logging

from docsim.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Chatty third-party loggers pinned to WARNING
_NOISY_LOGGERS = ("httpx", "httpcore", "botocore", "aiobotocore", "urllib3", "openai")


def configure_logging(level: str | None = None) -> None:
    resolved = "DEBUG" if settings.debug else (level or settings.log_level).upper()
    logging.basicConfig(level=resolved, format=LOG_FORMAT)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
