# pipeline.py
# SPDX-License-Identifier: MIT
"""Pipeline orchestrator: validate, read, process, write, report.

:class:`MergePipeline` owns every per-job object (error governor, worker
pool, memory guard, reader, processor, writer) and is the boundary where
internal failures become a :class:`JobResult`. ``run()`` never raises for
job-level problems.

Stages::

    validate -> init -> read -> process -> write -> done | aborted

Without deduplication, each filtered batch is written as soon as it is
read. With deduplication, filtered batches are folded into one job-wide
key map during the read stage and the representatives are written once
reading finishes. Output is written inside a scratch directory and moved
onto the target only when the job succeeds.
"""
from __future__ import annotations

import shutil
import tempfile
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from ..codecs.jsonlio import JSONLEncoder
from .concurrency import ResourcePoolManager, WorkerPool
from .config import JobConfig
from .errors import ErrorRecord, JobAborted, ValidationError
from .governor import ErrorGovernor
from .interfaces import Batch
from .log import job_logger
from .memory import MemoryGuard
from .processor import BatchProcessor, UniqueKeyMap
from .progress import notify_progress
from .reader import BatchReader, ReadSummary
from .registries import CodecRegistry, default_codec_registry
from .writer import BatchWriter

__all__ = ["Stage", "JobResult", "MergePipeline", "run_merge"]

_ERROR_FIELDS = ("phase", "detail", "source", "row_index", "message", "cause", "timestamp", "record")


class Stage:
    VALIDATE = "validate"
    INIT = "init"
    READ = "read"
    PROCESS = "process"
    WRITE = "write"
    DONE = "done"
    ABORTED = "aborted"


@dataclass(frozen=True, slots=True)
class JobResult:
    """Outcome of one job; returned for successes and failures alike.

    Attributes:
        success (bool): True when the output was published.
        operation (str): Job kind, e.g. ``"merge"`` or ``"export"``.
        total_rows (int): Rows written to the output.
        elapsed_ms (int): Wall-clock duration.
        output_path (Path | None): Published output file.
        source_files (tuple[str, ...]): Inputs of the job.
        error_message (str | None): Why the job failed.
        errors (tuple[ErrorRecord, ...]): Every collected error.
        error_count (int): Number of errors recorded (also counts errors
            not collected when collection is disabled).
        error_report (str | None): Human-readable error summary.
        error_data_path (Path | None): Exported error records, if any.
        validation_errors (tuple[str, ...]): Pre-flight problems.
        stage (str): Last stage reached.
        stats (Mapping[str, Any]): Per-stage counters.
    """
    success: bool
    operation: str = "merge"
    total_rows: int = 0
    elapsed_ms: int = 0
    output_path: Path | None = None
    source_files: tuple[str, ...] = ()
    error_message: str | None = None
    errors: tuple[ErrorRecord, ...] = ()
    error_count: int = 0
    error_report: str | None = None
    error_data_path: Path | None = None
    validation_errors: tuple[str, ...] = ()
    stage: str = Stage.DONE
    stats: Mapping[str, Any] = field(default_factory=dict)

    @property
    def has_errors(self) -> bool:
        return self.error_count > 0 or bool(self.validation_errors)

    @property
    def rows_per_second(self) -> float:
        if self.elapsed_ms <= 0:
            return 0.0
        return self.total_rows * 1000.0 / self.elapsed_ms

    @classmethod
    def ok(cls, **kwargs: Any) -> "JobResult":
        return cls(success=True, **kwargs)

    @classmethod
    def failed(cls, message: str, **kwargs: Any) -> "JobResult":
        return cls(success=False, error_message=message, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-friendly summary (errors as the rendered report)."""
        return {
            "success": self.success,
            "operation": self.operation,
            "stage": self.stage,
            "total_rows": self.total_rows,
            "elapsed_ms": self.elapsed_ms,
            "rows_per_second": round(self.rows_per_second, 1),
            "output_path": str(self.output_path) if self.output_path else None,
            "source_files": list(self.source_files),
            "error_message": self.error_message,
            "error_count": self.error_count,
            "error_report": self.error_report,
            "error_data_path": str(self.error_data_path) if self.error_data_path else None,
            "validation_errors": list(self.validation_errors),
            "stats": dict(self.stats),
        }


class MergePipeline:
    """Run one merge job described by a :class:`JobConfig`.

    Args:
        config: The job.
        codecs: Codec registry used to pick decoders per source suffix and
            the encoder for the target suffix.
        pool_manager: Override for tests; a fresh manager is created per
            job by default.
        memory_guard: Override for tests; built from ``config.memory``
            by default.
    """

    def __init__(
        self,
        config: JobConfig,
        *,
        codecs: CodecRegistry | None = None,
        pool_manager: ResourcePoolManager | None = None,
        memory_guard: MemoryGuard | None = None,
        job_id: str | None = None,
    ) -> None:
        self.config = config
        self.job_id = job_id or uuid.uuid4().hex[:8]
        self.log = job_logger(__name__, self.job_id)
        self.codecs = codecs or default_codec_registry()
        self.pool_manager = pool_manager or ResourcePoolManager(job_id=self.job_id)
        self.memory_guard = memory_guard
        self.stage = Stage.VALIDATE
        policy = config.errors
        self.governor = ErrorGovernor(
            fail_fast=policy.fail_fast,
            max_error_count=policy.max_error_count,
            collect_errors=policy.collect_errors,
            log_errors=policy.log_errors,
            error_callback=config.error_callback,
            job_id=self.job_id,
        )
        self.read_summary: ReadSummary | None = None
        self.processor: BatchProcessor | None = None
        self.writer: BatchWriter | None = None
        self.scratch_dir: Path | None = None

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def validate(self) -> list[str]:
        """Return all configuration problems without touching any file."""
        cfg = self.config
        problems = cfg.validation_errors()
        for src in cfg.sources:
            if not self.codecs.supports(src):
                problems.append(f"no codec for source {src.name!r}")
        if cfg.target is not None and not self.codecs.supports(cfg.target):
            problems.append(f"no codec for output target {cfg.target.name!r}")
        return problems

    def _progress(self, current: int, phase: str, message: str | None = None) -> None:
        notify_progress(self.config.progress_callback, current, 100, phase, message)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------
    def run(self) -> JobResult:
        """Execute the job and return its result; never raises for job failures."""
        cfg = self.config
        started = time.monotonic()
        sources = tuple(str(s) for s in cfg.sources)

        problems = self.validate()
        if problems:
            exc = ValidationError(problems)
            self.log.error("%s", exc)
            return JobResult.failed(
                str(exc),
                operation=cfg.operation,
                source_files=sources,
                validation_errors=tuple(problems),
                elapsed_ms=self._elapsed_ms(started),
                stage=Stage.VALIDATE,
            )

        self.log.info("%s: %d source file(s) -> %s", cfg.operation, len(sources), cfg.target)
        pool: Any = None
        monitor = None
        try:
            self.stage = Stage.INIT
            self._progress(0, Stage.INIT, "starting")
            assert cfg.target is not None and cfg.schema is not None
            cfg.target.parent.mkdir(parents=True, exist_ok=True)
            self.scratch_dir = Path(tempfile.mkdtemp(prefix=f"tabmerge_{self.job_id}_"))
            pool = self.pool_manager.create_pool(cfg.pool, external=cfg.executor)
            monitor = self.pool_manager.start_monitor(pool, cfg.pool.monitor_interval_s)
            if self.memory_guard is None:
                self.memory_guard = MemoryGuard.from_config(cfg.memory, job_id=self.job_id)
            guard = self.memory_guard

            self.processor = BatchProcessor(
                governor=self.governor,
                filter=cfg.filter,
                key_extractor=cfg.key_extractor,
                merge_function=cfg.merge_function,
                deduplicate=cfg.deduplicate,
                skip_invalid_data=cfg.errors.skip_invalid_data,
                progress=cfg.progress_callback,
                job_id=self.job_id,
            )
            scratch_out = self.scratch_dir / cfg.target.name
            encoder = self.codecs.for_path(cfg.target).open_encoder(
                scratch_out, cfg.schema.columns, sheet_name=cfg.writer.sheet_name
            )
            self.writer = BatchWriter(
                encoder,
                governor=self.governor,
                chunk_size=cfg.writer.chunk_size,
                auto_tune=cfg.writer.auto_tune,
                target=str(cfg.target),
                memory_guard=guard,
                job_id=self.job_id,
            )
            with self.writer:
                self._read_and_write(pool, guard)
                self.writer.finish()

            shutil.move(str(scratch_out), str(cfg.target))
            self.stage = Stage.DONE
            self._progress(100, Stage.DONE, f"{self.writer.rows_written} rows written")
            result = JobResult.ok(
                operation=cfg.operation,
                total_rows=self.writer.rows_written,
                output_path=cfg.target,
                **self._error_fields(),
                **self._common_fields(started, sources, pool, guard),
            )
            self._log_summary(result)
            return result
        except JobAborted as exc:
            return self._failure(f"job aborted: {exc}", started, sources, pool)
        except Exception as exc:  # noqa: BLE001
            self.log.exception("unexpected failure during %s", self.stage)
            return self._failure(f"{type(exc).__name__}: {exc}", started, sources, pool)
        finally:
            if monitor is not None:
                monitor.stop()
            if pool is not None:
                self.pool_manager.shutdown(
                    pool,
                    force_on_timeout=cfg.pool.force_shutdown,
                    timeout_s=cfg.pool.shutdown_timeout_s,
                )
            if self.scratch_dir is not None:
                shutil.rmtree(self.scratch_dir, ignore_errors=True)

    def _read_and_write(self, pool: Any, guard: MemoryGuard) -> None:
        cfg = self.config
        processor = self.processor
        writer = self.writer
        assert processor is not None and writer is not None
        key_map = UniqueKeyMap() if cfg.deduplicate else None

        def on_batch(batch: Batch) -> None:
            if self.governor.stopped:
                raise JobAborted(self.governor.stop_reason or "error governor requested stop")
            kept = processor.filter(batch)
            if not kept:
                return
            if key_map is not None:
                processor.fold(kept, key_map)
            else:
                writer.write(kept)

        self.stage = Stage.READ
        reader = BatchReader(
            pool=pool,
            governor=self.governor,
            batch_size=cfg.effective_batch_size,
            max_concurrent_files=cfg.effective_max_concurrent_files,
            schema=cfg.schema,
            skip_invalid_data=cfg.errors.skip_invalid_data,
            continue_on_error=cfg.errors.continue_on_error,
            memory_guard=guard,
            progress=cfg.progress_callback,
            progress_every_rows=cfg.reader.progress_every_rows,
            read_timeout_s=cfg.reader.read_timeout_s,
            job_id=self.job_id,
        )
        self.read_summary = reader.read_files(cfg.sources, self.codecs.for_path, on_batch)
        self._progress(30, Stage.READ, f"{self.read_summary.total_rows} rows read")

        self.stage = Stage.PROCESS
        pending: list = key_map.drain() if key_map is not None else []
        stats = processor.stats
        self._progress(
            60,
            Stage.PROCESS,
            f"{stats.filtered_in} kept, {stats.filtered_out} filtered"
            + (f", {len(pending)} unique keys" if key_map is not None else ""),
        )

        self.stage = Stage.WRITE
        if pending:
            writer.write(pending, expected_total=len(pending))
        if self.governor.stopped:
            raise JobAborted(self.governor.stop_reason or "error governor requested stop")

    # ------------------------------------------------------------------
    # Result assembly
    # ------------------------------------------------------------------
    def _failure(self, message: str, started: float, sources: tuple[str, ...], pool: Any) -> JobResult:
        failed_stage = self.stage
        self.stage = Stage.ABORTED
        self.log.error("%s failed in %s stage: %s", self.config.operation, failed_stage, message)
        result = JobResult.failed(
            message,
            operation=self.config.operation,
            total_rows=self.writer.rows_written if self.writer is not None else 0,
            **self._error_fields(),
            **self._common_fields(started, sources, pool, self.memory_guard, stage=Stage.ABORTED),
        )
        self._log_summary(result)
        return result

    def _error_fields(self) -> dict[str, Any]:
        gov = self.governor
        return {
            "errors": tuple(gov.errors()),
            "error_count": gov.error_count(),
            "error_report": gov.report() if gov.has_errors() else None,
            "error_data_path": self._export_errors(),
        }

    def _common_fields(
        self,
        started: float,
        sources: tuple[str, ...],
        pool: Any,
        guard: MemoryGuard | None,
        *,
        stage: str | None = None,
    ) -> dict[str, Any]:
        stats: dict[str, Any] = {}
        if self.read_summary is not None:
            stats["read"] = self.read_summary.as_dict()
        if self.processor is not None:
            stats["process"] = self.processor.stats.as_dict()
        if self.writer is not None:
            stats["write"] = {
                "rows_written": self.writer.rows_written,
                "rows_dropped": self.writer.rows_dropped,
                "chunks_failed": self.writer.chunks_failed,
                "rows_per_second": round(self.writer.rows_per_second, 1),
            }
        if isinstance(pool, WorkerPool):
            stats["pool"] = {"caller_runs": pool.caller_runs, "core_size": pool.core_size}
        if guard is not None:
            stats["memory"] = {"reclaims": guard.reclaim_count, "pauses": guard.pause_count}
        stats["errors_by_phase"] = self.governor.counts_by_phase()
        return {
            "elapsed_ms": self._elapsed_ms(started),
            "source_files": sources,
            "stage": stage or self.stage,
            "stats": stats,
        }

    def _export_errors(self) -> Path | None:
        path = self.config.error_data_path()
        if path is None or not self.governor.has_errors():
            return None
        errors = self.governor.errors()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with JSONLEncoder(path, _ERROR_FIELDS) as enc:
                enc.encode([err.to_dict() for err in errors])
        except Exception as exc:  # noqa: BLE001
            self.log.warning("could not export error data to %s: %s", path, exc)
            return None
        self.log.info("exported %d error record(s) to %s", len(errors), path)
        return path

    def _log_summary(self, result: JobResult) -> None:
        level = self.log.warning if result.has_errors else self.log.info
        level(
            "%s %s: rows=%d errors=%d elapsed=%dms (%.0f rows/s)",
            result.operation,
            "succeeded" if result.success else "failed",
            result.total_rows,
            result.error_count,
            result.elapsed_ms,
            result.rows_per_second,
        )

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)


def run_merge(config: JobConfig, **kwargs: Any) -> JobResult:
    """Convenience wrapper: ``MergePipeline(config, **kwargs).run()``."""
    return MergePipeline(config, **kwargs).run()
