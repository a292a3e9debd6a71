# governor.py
# SPDX-License-Identifier: MIT
"""Thread-safe error collection and the continue-vs-abort decision.

One :class:`ErrorGovernor` lives for exactly one job. Readers, the
processor and the writer hand it every failure they observe; its
``record_error`` verdict is the single source of truth for whether the
job keeps going.
"""
from __future__ import annotations

import threading
from collections.abc import Callable

from .errors import ErrorRecord, Phase
from .log import job_logger

__all__ = ["ErrorGovernor", "DEFAULT_REPORT_SAMPLE"]

DEFAULT_REPORT_SAMPLE = 10

ErrorCallback = Callable[[ErrorRecord, int, str], bool]


class ErrorGovernor:
    """Collects :class:`ErrorRecord` objects and decides when to stop.

    ``record_error`` returns True when the job must stop: the job is
    fail-fast, the total count reached ``max_error_count`` (values <= 0
    mean unlimited), or the optional ``error_callback`` returned False.
    Once a stop has been signalled it stays signalled.

    This class never raises from ``record_error``; a failure inside the
    governor itself is logged and reported as a stop only when the job is
    fail-fast.
    """

    def __init__(
        self,
        *,
        fail_fast: bool = False,
        max_error_count: int = -1,
        collect_errors: bool = True,
        log_errors: bool = True,
        error_callback: ErrorCallback | None = None,
        job_id: str | None = None,
        sample_size: int = DEFAULT_REPORT_SAMPLE,
    ) -> None:
        self.fail_fast = bool(fail_fast)
        self.max_error_count = int(max_error_count)
        self.collect_errors = bool(collect_errors)
        self.log_errors = bool(log_errors)
        self.error_callback = error_callback
        self.job_id = job_id or "-"
        self.log = job_logger(__name__, self.job_id)
        self.sample_size = max(1, int(sample_size))
        self._lock = threading.Lock()
        self._errors: list[ErrorRecord] = []
        self._count = 0
        self._by_phase: dict[str, int] = {phase: 0 for phase in Phase.ALL}
        self._stopped = False
        self._stop_reason: str | None = None

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------
    def record_error(self, error: ErrorRecord) -> bool:
        """Append ``error`` and return whether the job should stop."""
        try:
            with self._lock:
                if self.collect_errors:
                    self._errors.append(error)
                self._count += 1
                self._by_phase[error.phase] = self._by_phase.get(error.phase, 0) + 1
                count = self._count
                if not self._stopped:
                    if self.fail_fast:
                        self._mark_stopped("fail-fast policy")
                    elif 0 < self.max_error_count <= count:
                        self._mark_stopped(f"error limit reached ({self.max_error_count})")
                stop = self._stopped

            if not stop and self.error_callback is not None:
                if not self._consult_callback(error, count):
                    with self._lock:
                        if not self._stopped:
                            self._mark_stopped("error callback requested stop")
                    stop = True

            if self.log_errors:
                self._log_error(error, count, stop)
            return stop
        except Exception as exc:  # noqa: BLE001
            self.log.error("error governor failed to record %r: %s", error, exc)
            return self.fail_fast

    def _mark_stopped(self, reason: str) -> None:
        self._stopped = True
        self._stop_reason = reason

    def _consult_callback(self, error: ErrorRecord, count: int) -> bool:
        try:
            return bool(self.error_callback(error, count, error.phase))  # type: ignore[misc]
        except Exception as exc:  # noqa: BLE001
            self.log.warning("error callback raised, continuing: %s", exc)
            return True

    def _log_error(self, error: ErrorRecord, count: int, stop: bool) -> None:
        if stop:
            self.log.error(
                "%s (error #%d, stopping: %s)",
                error.short_description(),
                count,
                self._stop_reason,
            )
        else:
            self.log.warning("%s (error #%d)", error.short_description(), count)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @property
    def stopped(self) -> bool:
        """True once any recorded error produced a stop verdict."""
        return self._stopped

    @property
    def stop_reason(self) -> str | None:
        return self._stop_reason

    def error_count(self) -> int:
        with self._lock:
            return self._count

    def has_errors(self) -> bool:
        return self.error_count() > 0

    def phase_count(self, phase: str) -> int:
        with self._lock:
            return self._by_phase.get(phase, 0)

    def counts_by_phase(self) -> dict[str, int]:
        with self._lock:
            return dict(self._by_phase)

    def errors(self) -> list[ErrorRecord]:
        """Snapshot of collected errors in arrival order."""
        with self._lock:
            return list(self._errors)

    def report(self) -> str:
        """Render a human-readable summary bucketed by phase.

        The report lists at most ``sample_size`` individual errors; when
        ``collect_errors`` is off only the counters are shown.
        """
        with self._lock:
            count = self._count
            by_phase = dict(self._by_phase)
            sample = list(self._errors[: self.sample_size])
            collected = len(self._errors)

        if count == 0:
            return f"job {self.job_id}: no errors"

        lines = [f"=== error report (job {self.job_id}) ===", f"total errors: {count}"]
        for phase in Phase.ALL:
            if by_phase.get(phase):
                lines.append(f"  {phase}: {by_phase[phase]}")
        if self._stop_reason:
            lines.append(f"stopped: {self._stop_reason}")
        if sample:
            lines.append("")
            lines.append(f"first {len(sample)} errors:")
            for idx, err in enumerate(sample, start=1):
                row = str(err.row_index) if err.row_index >= 0 else "unknown"
                lines.append(
                    f"{idx}. [{err.phase_label}] source={err.source or 'unknown'} "
                    f"row={row} message={err.message}"
                )
            remaining = collected - len(sample)
            if remaining > 0:
                lines.append(f"... {remaining} more errors not shown")
        return "\n".join(lines)
