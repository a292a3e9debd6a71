# reader.py
# SPDX-License-Identifier: MIT
"""Batch reader: concurrent, wave-bounded decoding of many source files.

Each source file is read by one task on the worker pool. Tasks are
started in waves of at most ``max_concurrent_files`` and a wave must
finish before the next one begins. Inside a task the codec's per-row
callback fills a batch; a full batch is handed to ``on_batch`` on the
reading thread, so a slow consumer holds the reader back.

Per-file lifecycle::

    opening -> streaming -> (flushing -> streaming)* -> completed | failed
"""
from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import Executor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .codec import RowDecodeError
from .concurrency import WorkerPool, run_in_waves
from .errors import ErrorRecord, JobAborted, SchemaError
from .governor import ErrorGovernor
from .interfaces import Batch, ProgressCallback, Record, RecordDecoder
from .log import job_logger
from .memory import MemoryGuard
from .progress import notify_progress
from .schema import RecordSchema

__all__ = ["FileState", "FileReadResult", "ReadSummary", "BatchReader"]

PHASE_NAME = "read"


class FileState:
    OPENING = "opening"
    STREAMING = "streaming"
    FLUSHING = "flushing"
    COMPLETED = "completed"
    FAILED = "failed"


class _ReadCancelled(Exception):
    """Internal: the read deadline passed or the worker pool was force-stopped."""


@dataclass(slots=True)
class FileReadResult:
    """Outcome of reading one source file."""

    path: str
    state: str = FileState.OPENING
    rows_read: int = 0
    rows_emitted: int = 0
    rows_rejected: int = 0
    batches: int = 0
    error: str | None = None


@dataclass(slots=True)
class ReadSummary:
    """Aggregate outcome of :meth:`BatchReader.read_files`."""

    total_rows: int = 0
    files_completed: int = 0
    files_failed: int = 0
    waves: int = 0
    peak_open_files: int = 0
    timed_out: bool = False
    results: list[FileReadResult] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "total_rows": self.total_rows,
            "files_completed": self.files_completed,
            "files_failed": self.files_failed,
            "waves": self.waves,
            "peak_open_files": self.peak_open_files,
            "timed_out": self.timed_out,
        }


class BatchReader:
    """Read source files concurrently and emit fixed-size batches.

    Args:
        pool: Worker pool (or any ``concurrent.futures.Executor``) the
            per-file tasks run on.
        governor: Receives every read/transform failure.
        batch_size: Records per emitted batch (>= 1).
        max_concurrent_files: Upper bound on files read at the same time.
        schema: When given, each decoded row is projected onto it and
            conversion failures become ``transform`` errors.
        skip_invalid_data: Drop bad rows and continue (otherwise the
            governor's verdict alone decides whether to go on).
        continue_on_error: Keep reading other files after a file fails.
        memory_guard: Consulted after every batch.
        progress: Progress callback.
        progress_every_rows: Interval for fine-grained progress updates.
        read_timeout_s: Budget for the whole read phase.
    """

    def __init__(
        self,
        *,
        pool: WorkerPool | Executor,
        governor: ErrorGovernor,
        batch_size: int,
        max_concurrent_files: int,
        schema: RecordSchema | None = None,
        skip_invalid_data: bool = True,
        continue_on_error: bool = True,
        memory_guard: MemoryGuard | None = None,
        progress: ProgressCallback | None = None,
        progress_every_rows: int = 10_000,
        read_timeout_s: float | None = 1800.0,
        job_id: str | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if max_concurrent_files < 1:
            raise ValueError("max_concurrent_files must be >= 1")
        self.pool = pool
        self.governor = governor
        self.batch_size = batch_size
        self.max_concurrent_files = max_concurrent_files
        self.schema = schema
        self.skip_invalid_data = skip_invalid_data
        self.continue_on_error = continue_on_error
        self.memory_guard = memory_guard
        self.progress = progress
        self.progress_every_rows = max(1, int(progress_every_rows))
        self.read_timeout_s = read_timeout_s
        self.job_id = job_id or "-"
        self.log = job_logger(__name__, self.job_id)
        self.file_states: dict[str, str] = {}
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._pool_cancel = pool.cancel_event if isinstance(pool, WorkerPool) else None
        self._open_files = 0
        self._peak_open_files = 0
        self._total_rows = 0
        self._next_progress = self.progress_every_rows
        self._files_done = 0
        self._total_files = 0

    # ------------------------------------------------------------------
    # Instrumentation
    # ------------------------------------------------------------------
    @property
    def open_files(self) -> int:
        return self._open_files

    @property
    def peak_open_files(self) -> int:
        return self._peak_open_files

    def _set_state(self, result: FileReadResult, state: str) -> None:
        result.state = state
        with self._lock:
            self.file_states[result.path] = state

    def _file_opened(self) -> None:
        with self._lock:
            self._open_files += 1
            self._peak_open_files = max(self._peak_open_files, self._open_files)

    def _file_closed(self) -> None:
        with self._lock:
            self._open_files -= 1

    def _cancelled(self) -> bool:
        """True after a read timeout or a forced shutdown of the worker pool."""
        return self._cancel.is_set() or (self._pool_cancel is not None and self._pool_cancel.is_set())

    def _file_finished(self, path: Path, result: FileReadResult) -> None:
        with self._lock:
            self._files_done += 1
            done = self._files_done
        notify_progress(
            self.progress,
            done,
            self._total_files,
            PHASE_NAME,
            f"{path.name}: {result.rows_emitted} rows" if result.error is None else f"{path.name}: failed",
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def read_files(
        self,
        files: Sequence[Path | str],
        codec: RecordDecoder | Callable[[Path], RecordDecoder],
        on_batch: Callable[[Batch], None],
    ) -> ReadSummary:
        """Read ``files`` and hand their rows to ``on_batch`` in batches.

        ``codec`` is either one decoder used for every file or a callable
        returning the decoder for a given path (such as
        ``CodecRegistry.for_path``).

        Raises:
            JobAborted: When the governor says stop, or a file fails and
                ``continue_on_error`` is off.
        """
        paths = [Path(f) for f in files]
        summary = ReadSummary()
        resolve = self._codec_resolver(codec)
        deadline = None if not self.read_timeout_s else time.monotonic() + float(self.read_timeout_s)
        total_files = len(paths)
        self._total_files = total_files
        wave_no = 0

        def _task(path: Path) -> FileReadResult:
            return self._read_one(path, resolve, on_batch)

        def _on_result(path: Path, result: FileReadResult) -> None:
            summary.results.append(result)
            if result.state == FileState.COMPLETED:
                summary.files_completed += 1
            else:
                summary.files_failed += 1

        def _on_error(path: Path, exc: BaseException) -> None:
            # JobAborted and unexpected task failures end the read phase.
            if isinstance(exc, JobAborted):
                raise exc
            raise JobAborted(f"reader task for {path} failed: {exc}") from exc

        def _on_timeout(path: Path) -> None:
            self._cancel.set()
            summary.timed_out = True
            summary.files_failed += 1
            summary.results.append(FileReadResult(str(path), FileState.FAILED, error="read timed out"))
            with self._lock:
                self.file_states[str(path)] = FileState.FAILED
            err = ErrorRecord.read_error(
                str(path), -1, f"read phase exceeded {self.read_timeout_s:.0f}s; file treated as failed"
            )
            if self.governor.record_error(err):
                raise JobAborted("read phase timed out", err)

        def _should_continue() -> bool:
            nonlocal wave_no
            if self.governor.stopped:
                return False
            if wave_no:
                self._between_waves(wave_no, summary)
            wave_no += 1
            return True

        self.log.info(
            "reading %d file(s), %d at a time, batch size %d",
            total_files,
            self.max_concurrent_files,
            self.batch_size,
        )
        try:
            summary.waves = run_in_waves(
                self.pool,
                paths,
                _task,
                wave_size=self.max_concurrent_files,
                on_result=_on_result,
                on_error=_on_error,
                on_timeout=_on_timeout,
                deadline=deadline,
                should_continue=_should_continue,
            )
        finally:
            summary.total_rows = self._total_rows
            summary.peak_open_files = self._peak_open_files
        if summary.waves:
            self._between_waves(summary.waves, summary)
        if self.governor.stopped:
            raise JobAborted(self.governor.stop_reason or "error governor requested stop")
        return summary

    def _codec_resolver(self, codec: Any) -> Callable[[Path], RecordDecoder]:
        if isinstance(codec, RecordDecoder):
            return lambda _path: codec
        if callable(codec):
            return codec
        raise TypeError(f"codec must be a RecordDecoder or a path -> decoder callable; got {type(codec).__name__}")

    def _between_waves(self, wave_no: int, summary: ReadSummary) -> None:
        if self.memory_guard is not None:
            self.memory_guard.check_and_reclaim()
        self.log.info(
            "wave %d done: files ok=%d failed=%d rows=%d",
            wave_no,
            summary.files_completed,
            summary.files_failed,
            self._total_rows,
        )

    # ------------------------------------------------------------------
    # Per-file task
    # ------------------------------------------------------------------
    def _read_one(
        self,
        path: Path,
        resolve: Callable[[Path], RecordDecoder],
        on_batch: Callable[[Batch], None],
    ) -> FileReadResult:
        result = FileReadResult(str(path))
        self._set_state(result, FileState.OPENING)
        self._file_opened()
        batch: Batch = []
        completed = False

        def flush() -> None:
            nonlocal batch
            if not batch:
                return
            if self.governor.stopped:
                raise JobAborted(self.governor.stop_reason or "error governor requested stop")
            if self._cancelled():
                raise _ReadCancelled()
            self._set_state(result, FileState.FLUSHING)
            out, batch = batch, []
            on_batch(out)
            result.batches += 1
            result.rows_emitted += len(out)
            self._count_rows(len(out))
            if self.memory_guard is not None:
                self.memory_guard.maybe_check(len(out))
                self.memory_guard.throttle(cancelled=lambda: self.governor.stopped)
            self._set_state(result, FileState.STREAMING)

        def on_record(record: Record | None, row_index: int) -> None:
            if self.governor.stopped:
                raise JobAborted(self.governor.stop_reason or "error governor requested stop")
            if self._cancelled():
                raise _ReadCancelled()
            result.rows_read += 1
            if record is None:
                self._row_failure(
                    result, ErrorRecord.read_error(str(path), row_index, "empty data row")
                )
                return
            if self.schema is not None:
                try:
                    record = self.schema.apply(record)
                except SchemaError as exc:
                    self._row_failure(
                        result,
                        ErrorRecord.convert_error(str(path), row_index, str(exc), record=record, cause=exc),
                    )
                    return
            batch.append(record)
            if len(batch) >= self.batch_size:
                flush()

        def on_complete() -> None:
            nonlocal completed
            flush()
            completed = True

        def on_error(err: BaseException) -> bool:
            result.rows_read += 1
            row_index = err.row_index if isinstance(err, RowDecodeError) else -1
            raw = err.raw if isinstance(err, RowDecodeError) else None
            error = ErrorRecord.read_error(str(path), row_index, str(err), record=raw, cause=err)
            result.rows_rejected += 1
            stop = self.governor.record_error(error)
            return not (stop or (not self.skip_invalid_data and not self.continue_on_error))

        try:
            codec = resolve(path)
            self._set_state(result, FileState.STREAMING)
            codec.decode(path, on_record, on_complete, on_error)
            if not completed:
                raise JobAborted(self.governor.stop_reason or f"decoding {path} stopped early")
            self._set_state(result, FileState.COMPLETED)
            self.log.debug("%s: %d rows in %d batch(es)", path.name, result.rows_emitted, result.batches)
            return result
        except JobAborted:
            self._set_state(result, FileState.FAILED)
            result.error = "aborted"
            raise
        except _ReadCancelled:
            self._set_state(result, FileState.FAILED)
            result.error = "cancelled"
            self.log.warning("%s: read cancelled after %d rows", path.name, result.rows_read)
            return result
        except Exception as exc:  # noqa: BLE001
            self._set_state(result, FileState.FAILED)
            result.error = str(exc)
            if batch:
                self.log.warning("%s: discarding partial batch of %d rows", path.name, len(batch))
            error = ErrorRecord.read_error(str(path), -1, f"failed to read file: {exc}", cause=exc)
            stop = self.governor.record_error(error)
            if stop or not self.continue_on_error:
                raise JobAborted(f"failed to read {path}: {exc}", error) from exc
            return result
        finally:
            self._file_closed()
            if not self._cancelled():
                self._file_finished(path, result)

    def _row_failure(self, result: FileReadResult, error: ErrorRecord) -> None:
        result.rows_rejected += 1
        if self.governor.record_error(error):
            raise JobAborted(self.governor.stop_reason or "error governor requested stop", error)
        if not self.skip_invalid_data and not self.continue_on_error:
            raise JobAborted(f"invalid row {error.row_index} in {error.source}", error)

    def _count_rows(self, n: int) -> None:
        report = None
        with self._lock:
            self._total_rows += n
            if self._total_rows >= self._next_progress:
                while self._next_progress <= self._total_rows:
                    self._next_progress += self.progress_every_rows
                report = self._total_rows
        if report is not None:
            notify_progress(self.progress, report, -1, PHASE_NAME, f"{report} rows read")
