# log.py
# SPDX-License-Identifier: MIT
"""Logging for tabmerge: the package logger and job-scoped adapters.

A NullHandler is installed on the ``tabmerge`` logger at import time so
library use stays quiet until the host application (or the CLI) calls
:func:`configure_logging`.

Everything a job does is logged through :func:`job_logger`, which
prefixes each message with ``[<job id>]`` and sets ``record.job_id`` so
formatters and filters can use it, e.g. ``"%(job_id)s %(message)s"``.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import IO, Any, MutableMapping

__all__ = [
    "PACKAGE_LOGGER_NAME",
    "DEFAULT_FORMAT",
    "get_logger",
    "job_logger",
    "JobLogAdapter",
    "configure_logging",
    "temp_level",
]

PACKAGE_LOGGER_NAME = "tabmerge"
DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(threadName)s]: %(message)s"
_HANDLER_NAME = "tabmerge-stream"

logging.getLogger(PACKAGE_LOGGER_NAME).addHandler(logging.NullHandler())


def _level_from(level: int | str) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return level


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a logger under the tabmerge namespace (defaults to the package logger)."""
    return logging.getLogger(name or PACKAGE_LOGGER_NAME)


class JobLogAdapter(logging.LoggerAdapter):
    """Prefix messages with the job id and attach it as ``record.job_id``."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        job_id = self.extra["job_id"]
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return f"[{job_id}] {msg}", kwargs

    @property
    def job_id(self) -> str:
        return self.extra["job_id"]


def job_logger(name: str | None, job_id: str | None) -> JobLogAdapter:
    """Return a job-scoped logger for module ``name``.

    Args:
        name (str | None): Module name, usually ``__name__``.
        job_id (str | None): Job identifier; ``"-"`` when unknown.
    """
    return JobLogAdapter(get_logger(name), {"job_id": job_id or "-"})


def _find_handler(logger: logging.Logger) -> logging.StreamHandler | None:
    for handler in logger.handlers:
        if handler.get_name() == _HANDLER_NAME and isinstance(handler, logging.StreamHandler):
            return handler
    return None


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: IO[str] | None = None,
    fmt: str | None = None,
    datefmt: str | None = None,
    propagate: bool | None = None,
    logger_name: str = PACKAGE_LOGGER_NAME,
) -> logging.Logger:
    """Attach (or update) the tabmerge stream handler on a logger.

    Repeated calls reuse the handler this function installed: its stream
    is switched to ``stream`` and its format replaced when ``fmt`` or
    ``datefmt`` is given. Handlers added by the host are left alone.

    Args:
        level (int | str): Logging level or level name.
        stream (IO[str] | None): Target stream; defaults to sys.stderr.
        fmt (str | None): Log format. Defaults to :data:`DEFAULT_FORMAT`.
        datefmt (str | None): Date format for the handler.
        propagate (bool | None): Whether records bubble up to ancestor
            loggers. None keeps propagation on so pytest's caplog works.
        logger_name (str): Logger to configure.

    Returns:
        logging.Logger: The configured logger.
    """
    logger = get_logger(logger_name)
    logger.setLevel(_level_from(level))
    logger.propagate = True if propagate is None else bool(propagate)
    target = stream if stream is not None else sys.stderr

    handler = _find_handler(logger)
    if handler is None:
        handler = logging.StreamHandler(target)
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(logging.Formatter(fmt=fmt or DEFAULT_FORMAT, datefmt=datefmt))
        logger.addHandler(handler)
    else:
        if getattr(handler.stream, "closed", False):
            # setStream() would flush the closed stream and fail
            handler.stream = target
        elif handler.stream is not target:
            handler.setStream(target)
        if fmt is not None or datefmt is not None:
            handler.setFormatter(logging.Formatter(fmt=fmt or DEFAULT_FORMAT, datefmt=datefmt))
    return logger


@contextmanager
def temp_level(level: int | str, name: str | None = None):
    """Temporarily change a logger level; the previous level is restored on exit."""
    logger = get_logger(name)
    old = logger.level
    logger.setLevel(_level_from(level))
    try:
        yield logger
    finally:
        logger.setLevel(old)
