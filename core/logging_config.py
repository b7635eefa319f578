"""
core/logging_config.py
Centralized logging configuration.

Call setup_logging() once at process start (scheduler.run_forever does).
Library modules use: logger = logging.getLogger(__name__)
"""

import logging
import sys

from core.config import get_settings


def setup_logging(
    level: int | str | None = None,
    fmt: str = "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    datefmt: str = "%Y-%m-%d %H:%M:%S",
) -> None:
    """Configure the root logger with a stderr handler.

    Level defaults to ``LOG_LEVEL`` from settings. Repeated calls are no-ops.
    """
    root = logging.getLogger()
    if root.handlers:
        return

    if level is None:
        level = get_settings().LOG_LEVEL
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root.setLevel(level)
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    root.addHandler(handler)

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
