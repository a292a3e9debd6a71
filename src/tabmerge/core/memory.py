# memory.py
# SPDX-License-Identifier: MIT
"""Memory guard: sample usage, reclaim under pressure, pause ingestion.

Usage is measured with psutil. When a budget is configured the ratio is
the process resident set size over that budget; otherwise it is the
system-wide used fraction. Reclamation runs ``gc.collect()`` at most once
per cooldown window and logs the before/after figures. Because a
collection is not guaranteed to return memory, readers also call
:meth:`MemoryGuard.throttle`, which blocks ingestion while usage stays
above the pause threshold.
"""
from __future__ import annotations

import gc
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import psutil

from .config import MemoryConfig
from .log import job_logger

__all__ = ["MemorySnapshot", "MemoryGuard"]

_MB = 1024 * 1024


@dataclass(frozen=True, slots=True)
class MemorySnapshot:
    """Point-in-time memory figures."""

    timestamp: float
    process_rss_mb: float
    system_used_percent: float
    system_available_mb: float
    usage_ratio: float


class MemoryGuard:
    """Advisory memory checks scoped to a single job.

    Args:
        threshold (float): Ratio above which reclamation is attempted.
        check_every_rows (int): Row interval for :meth:`maybe_check`.
        cooldown_s (float): Minimum seconds between reclamations.
        budget_mb (float | None): Process RSS budget; None measures the
            whole system instead.
        pause_threshold (float | None): Ratio above which
            :meth:`throttle` pauses the caller; None disables pausing.
        max_pause_s (float): Longest single pause.
        sampler (Callable[[], float] | None): Replacement ratio source,
            mainly for tests.
    """

    def __init__(
        self,
        *,
        threshold: float = 0.7,
        check_every_rows: int = 50_000,
        cooldown_s: float = 10.0,
        budget_mb: float | None = None,
        pause_threshold: float | None = None,
        max_pause_s: float = 30.0,
        job_id: str | None = None,
        sampler: Callable[[], float] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.threshold = float(threshold)
        self.check_every_rows = max(1, int(check_every_rows))
        self.cooldown_s = max(0.0, float(cooldown_s))
        self.budget_mb = budget_mb
        self.pause_threshold = pause_threshold
        self.max_pause_s = max(0.0, float(max_pause_s))
        self.job_id = job_id or "-"
        self.log = job_logger(__name__, self.job_id)
        self._sampler = sampler
        self._clock = clock
        self._sleep = sleep
        self._process = psutil.Process()
        self._lock = threading.Lock()
        self._last_reclaim: float | None = None
        self._rows_seen = 0
        self._next_check = self.check_every_rows
        self.reclaim_count = 0
        self.pause_count = 0
        self.last_before: MemorySnapshot | None = None
        self.last_after: MemorySnapshot | None = None

    @classmethod
    def from_config(cls, cfg: MemoryConfig, *, job_id: str | None = None) -> "MemoryGuard":
        return cls(
            threshold=cfg.threshold,
            check_every_rows=cfg.check_every_rows,
            cooldown_s=cfg.cooldown_s,
            budget_mb=cfg.budget_mb,
            pause_threshold=cfg.pause_threshold,
            max_pause_s=cfg.max_pause_s,
            job_id=job_id,
        )

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------
    def snapshot(self, ratio: float | None = None) -> MemorySnapshot:
        """Capture process and system figures; ``ratio`` defaults to :meth:`usage_ratio`."""
        rss_mb = self._process.memory_info().rss / _MB
        vm = psutil.virtual_memory()
        return MemorySnapshot(
            timestamp=time.time(),
            process_rss_mb=rss_mb,
            system_used_percent=float(vm.percent),
            system_available_mb=vm.available / _MB,
            usage_ratio=self.usage_ratio() if ratio is None else float(ratio),
        )

    def usage_ratio(self) -> float:
        """Return current usage as a fraction of the budget (or of RAM)."""
        if self._sampler is not None:
            return float(self._sampler())
        if self.budget_mb:
            return self._process.memory_info().rss / _MB / float(self.budget_mb)
        return psutil.virtual_memory().percent / 100.0

    # ------------------------------------------------------------------
    # Reclamation
    # ------------------------------------------------------------------
    def check_and_reclaim(self, threshold: float | None = None) -> bool:
        """Reclaim when usage exceeds ``threshold`` and the cooldown passed.

        Returns:
            bool: True when a reclamation ran.
        """
        limit = self.threshold if threshold is None else float(threshold)
        before = self.usage_ratio()
        if before <= limit:
            return False
        with self._lock:
            now = self._clock()
            if self._last_reclaim is not None and now - self._last_reclaim < self.cooldown_s:
                return False
            self._last_reclaim = now
        before_snap = self.snapshot(before)
        collected = gc.collect()
        after_snap = self.snapshot()
        with self._lock:
            self.reclaim_count += 1
            self.last_before = before_snap
            self.last_after = after_snap
        self.log.info(
            "memory usage %.1f%% above %.1f%% (rss %.1fMB); reclaimed %d objects, now %.1f%% (rss %.1fMB)",
            before * 100,
            limit * 100,
            before_snap.process_rss_mb,
            collected,
            after_snap.usage_ratio * 100,
            after_snap.process_rss_mb,
        )
        return True

    def maybe_check(self, rows: int = 1) -> bool:
        """Count ``rows`` and run :meth:`check_and_reclaim` every N rows."""
        with self._lock:
            self._rows_seen += rows
            if self._rows_seen < self._next_check:
                return False
            while self._next_check <= self._rows_seen:
                self._next_check += self.check_every_rows
        return self.check_and_reclaim()

    # ------------------------------------------------------------------
    # Backpressure
    # ------------------------------------------------------------------
    def throttle(self, cancelled: Callable[[], bool] | None = None) -> float:
        """Block while usage is above the pause threshold.

        Reclaims first, then polls until usage drops, ``max_pause_s``
        elapses, or ``cancelled()`` returns True.

        Returns:
            float: Seconds spent paused.
        """
        if self.pause_threshold is None:
            return 0.0
        if self.usage_ratio() <= self.pause_threshold:
            return 0.0
        self.check_and_reclaim(self.pause_threshold)
        start = self._clock()
        paused = False
        while self.usage_ratio() > self.pause_threshold:
            if cancelled is not None and cancelled():
                break
            waited = self._clock() - start
            if waited >= self.max_pause_s:
                self.log.warning(
                    "memory still above %.0f%% after %.1fs pause; resuming ingestion",
                    self.pause_threshold * 100,
                    waited,
                )
                break
            if not paused:
                paused = True
                with self._lock:
                    self.pause_count += 1
                self.log.info("pausing ingestion under memory pressure")
            self._sleep(min(0.25, self.max_pause_s - waited))
        return self._clock() - start
