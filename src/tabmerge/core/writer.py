# writer.py
# SPDX-License-Identifier: MIT
"""Batch writer: serialized, chunked delivery of records to an encoder.

All writes go through one lock, so batches produced by concurrent readers
reach the encoder one at a time. A chunk the encoder rejects is recorded
as a ``write`` error and, unless the governor says stop, skipped: the job
carries on and those rows are missing from the output.
"""
from __future__ import annotations

import threading
import time
from collections.abc import Sequence
from typing import Self

from .errors import ErrorRecord, JobAborted, WriteError
from .governor import ErrorGovernor
from .interfaces import Record, RecordEncoder
from .log import job_logger
from .memory import MemoryGuard

__all__ = ["BatchWriter", "tune_chunk_size", "DEFAULT_CHUNK_SIZE"]

DEFAULT_CHUNK_SIZE = 5000
_MEMORY_CHECK_EVERY_CHUNKS = 20
_LOG_EVERY_ROWS = 50_000


def tune_chunk_size(total_rows: int | None, base: int = DEFAULT_CHUNK_SIZE) -> int:
    """Pick a chunk size for ``total_rows``; never smaller than ``base``.

    Up to 100k rows the base size is used; below 1M at least 10,000;
    beyond that at least 20,000.
    """
    base = base if base > 0 else DEFAULT_CHUNK_SIZE
    if not total_rows or total_rows < 100_000:
        return base
    if total_rows < 1_000_000:
        return max(base, 10_000)
    return max(base, 20_000)


class BatchWriter:
    """Stream records to a :class:`RecordEncoder` in bounded chunks.

    Args:
        encoder: Output encoder; finished exactly once by :meth:`finish`.
        governor: Receives chunk failures.
        chunk_size: Base rows per ``encode`` call.
        auto_tune: Grow the chunk size for large writes.
        target: Output identifier used in error records.
        memory_guard: Checked every 20 chunks.
    """

    def __init__(
        self,
        encoder: RecordEncoder,
        *,
        governor: ErrorGovernor,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        auto_tune: bool = True,
        target: str | None = None,
        memory_guard: MemoryGuard | None = None,
        job_id: str | None = None,
    ) -> None:
        self.encoder = encoder
        self.governor = governor
        self.chunk_size = chunk_size if chunk_size > 0 else DEFAULT_CHUNK_SIZE
        self.auto_tune = auto_tune
        self.target = target
        self.memory_guard = memory_guard
        self.job_id = job_id or "-"
        self.log = job_logger(__name__, self.job_id)
        self.rows_written = 0
        self.rows_dropped = 0
        self.chunks_written = 0
        self.chunks_failed = 0
        self._lock = threading.Lock()
        self._finished = False
        self._started_at: float | None = None
        self._finished_at: float | None = None
        self._next_log = _LOG_EVERY_ROWS

    @property
    def finished(self) -> bool:
        return self._finished

    def effective_chunk_size(self, expected_rows: int | None = None) -> int:
        if not self.auto_tune:
            return self.chunk_size
        return tune_chunk_size(expected_rows, self.chunk_size)

    def write(self, rows: Sequence[Record], *, expected_total: int | None = None) -> int:
        """Write ``rows`` chunk by chunk; return how many rows were written.

        Raises:
            RuntimeError: If called after :meth:`finish`.
            JobAborted: When a chunk fails and the governor says stop.
        """
        if not rows:
            return 0
        with self._lock:
            if self._finished:
                raise RuntimeError("BatchWriter.write() called after finish()")
            if self._started_at is None:
                self._started_at = time.monotonic()
            size = self.effective_chunk_size(max(expected_total or 0, len(rows)))
            written = 0
            for start in range(0, len(rows), size):
                chunk = rows[start:start + size]
                written += self._write_chunk(chunk)
            return written

    def _write_chunk(self, chunk: Sequence[Record]) -> int:
        try:
            self.encoder.encode(chunk)
        except Exception as exc:  # noqa: BLE001
            self.chunks_failed += 1
            self.rows_dropped += len(chunk)
            error = ErrorRecord.write_error(
                self.target,
                f"failed to write chunk of {len(chunk)} rows: {exc}",
                record=chunk[0],
                cause=exc,
            )
            if self.governor.record_error(error):
                raise JobAborted(self.governor.stop_reason or "error governor requested stop", error) from exc
            self.log.warning("skipped chunk of %d rows after write failure", len(chunk))
            return 0
        self.chunks_written += 1
        self.rows_written += len(chunk)
        if self.rows_written >= self._next_log:
            self.log.debug(
                "written %d rows (%.0f rows/s)", self.rows_written, self.rows_per_second
            )
            while self._next_log <= self.rows_written:
                self._next_log += _LOG_EVERY_ROWS
        if self.memory_guard is not None and self.chunks_written % _MEMORY_CHECK_EVERY_CHUNKS == 0:
            self.memory_guard.check_and_reclaim()
        return len(chunk)

    def finish(self) -> None:
        """Finalize the encoder once; later calls do nothing.

        Raises:
            WriteError: If the encoder fails to finalize the output.
        """
        with self._lock:
            if self._finished:
                return
            self._finished = True
            self._finished_at = time.monotonic()
            try:
                self.encoder.finish()
            except Exception as exc:  # noqa: BLE001
                error = ErrorRecord.write_error(self.target, f"failed to finalize output: {exc}", cause=exc)
                self.governor.record_error(error)
                raise WriteError(f"failed to finalize {self.target}: {exc}") from exc
        self.log.info(
            "writer finished: %d rows in %d chunk(s), %d chunk(s) failed, %.0f rows/s",
            self.rows_written,
            self.chunks_written,
            self.chunks_failed,
            self.rows_per_second,
        )

    @property
    def elapsed_s(self) -> float:
        if self._started_at is None:
            return 0.0
        end = self._finished_at if self._finished_at is not None else time.monotonic()
        return max(0.0, end - self._started_at)

    @property
    def rows_per_second(self) -> float:
        elapsed = self.elapsed_s
        return self.rows_written / elapsed if elapsed > 0 else 0.0

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.finish()
            return
        try:
            self.finish()
        except Exception as finish_exc:  # noqa: BLE001
            self.log.warning("finishing writer after failure also failed: %s", finish_exc)
