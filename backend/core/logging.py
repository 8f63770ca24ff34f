# backend/core/logging.py

import logging
import os
import sys
from typing import Optional


DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Third-party loggers that log every frame / request at INFO
NOISY_LOGGERS = ("websockets", "httpx", "httpcore")


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure application-wide logging.

    - Root level from ``level`` or the LOG_LEVEL env var (default: INFO)
    - One stdout handler, so container runtimes pick the logs up
    - Client library chatter held at WARNING; uvicorn keeps its own logs

    Fan-out per message is logged at DEBUG by the registry, so LOG_LEVEL=DEBUG
    shows every publish with its subscriber count.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Uvicorn (or pytest) may already have installed handlers
    if not root_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
        root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(logging.INFO)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Usage:
        from core.logging import get_logger

        logger = get_logger(__name__)
        logger.info("✓ Subscribed %s to room=%s", session_id, room_id)
    """
    return logging.getLogger(name)
