"""Logging helpers for the web push dispatcher.

Every component logger lives under the ``webpush_dispatch`` namespace so the
whole package can be tuned with a single level. Handlers are installed once
by :func:`configure_logging`, called from the entry point.
"""

import logging

ROOT_LOGGER_NAME = "webpush_dispatch"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def get_logger(name: str | None = None) -> logging.Logger:
    """Return the package logger, or the child logger ``webpush_dispatch.<name>``."""
    if not name or name == ROOT_LOGGER_NAME:
        return logging.getLogger(ROOT_LOGGER_NAME)
    if name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def configure_logging(level: str = "INFO") -> None:
    """Install the process-wide handler, replacing any earlier configuration."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
