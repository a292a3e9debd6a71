# progress.py
# SPDX-License-Identifier: MIT
"""Progress reporting helpers shared by the pipeline stages."""
from __future__ import annotations

from .interfaces import ProgressCallback
from .log import get_logger

log = get_logger(__name__)

__all__ = ["notify_progress", "log_progress"]


def notify_progress(
    callback: ProgressCallback | None,
    current: int,
    total: int,
    phase: str,
    message: str | None = None,
) -> None:
    """Invoke ``callback`` and swallow its failures.

    A broken progress callback must never take a job down, so exceptions
    are logged at debug level and otherwise ignored.
    """
    if callback is None:
        return
    try:
        callback(current, total, phase, message)
    except Exception as exc:  # noqa: BLE001
        log.debug("progress callback failed during %s: %s", phase, exc)


def log_progress(current: int, total: int, phase: str, message: str | None = None) -> None:
    """Progress callback that writes to the tabmerge logger."""
    if total > 0:
        pct = current * 100.0 / total
        log.info("[%s] %.1f%% (%d/%d)%s", phase, pct, current, total, f" {message}" if message else "")
    else:
        log.info("[%s] %d%s", phase, current, f" {message}" if message else "")
