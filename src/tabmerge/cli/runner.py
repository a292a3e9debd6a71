# runner.py
# SPDX-License-Identifier: MIT

from __future__ import annotations

import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from ..core.config import JobConfig, MergeConfig
from ..core.governor import ErrorGovernor
from ..core.interfaces import KeyExtractor, MergeFunction, ProgressCallback, Record
from ..core.log import get_logger
from ..core.pipeline import JobResult, MergePipeline
from ..core.registries import CodecRegistry, default_codec_registry
from ..core.schema import RecordSchema
from ..core.writer import BatchWriter

log = get_logger(__name__)


def infer_schema(
    sources: Sequence[Path | str],
    *,
    types: Mapping[str, str] | None = None,
    registry: CodecRegistry | None = None,
) -> RecordSchema | None:
    """Build a schema from the header of the first readable source.

    Returns None when no source has a readable, non-empty header; the
    job then fails validation with a "no schema" problem.
    """
    reg = registry or default_codec_registry()
    for src in sources:
        path = Path(src)
        if not path.is_file() or not reg.supports(path):
            continue
        try:
            header = reg.for_path(path).read_header(path)
        except Exception as exc:  # noqa: BLE001
            log.warning("could not read header of %s: %s", path, exc)
            continue
        if header:
            log.debug("inferred %d column(s) from %s", len(header), path)
            wanted = dict(types or {})
            return RecordSchema(tuple(header), {c: t for c, t in wanted.items() if c in header})
    return None


def merge(
    config: JobConfig | MergeConfig,
    *,
    progress_callback: ProgressCallback | None = None,
    registry: CodecRegistry | None = None,
) -> JobResult:
    """Run a merge job from a runtime or declarative config.

    This is the main programmatic entry point. A ``MergeConfig`` is
    resolved into a ``JobConfig`` first; when it declares no columns the
    schema is inferred from the first source header. A ``JobConfig``
    without a schema is treated the same way.

    Configuration errors are reported in the returned ``JobResult``
    rather than raised.
    """
    reg = registry or default_codec_registry()
    if isinstance(config, MergeConfig):
        try:
            job = config.to_job_config(progress_callback=progress_callback)
        except ValueError as exc:
            log.error("invalid merge config: %s", exc)
            return JobResult.failed(
                f"invalid job configuration: {exc}",
                source_files=tuple(config.job.sources),
                validation_errors=(str(exc),),
                stage="validate",
            )
        types = config.schema.types
    else:
        job = config
        if progress_callback is not None and job.progress_callback is None:
            job = replace(job, progress_callback=progress_callback)
        types = None
    if job.schema is None:
        schema = infer_schema(job.sources, types=types, registry=reg)
        if schema is not None:
            job = job.with_schema(schema)
    return MergePipeline(job, codecs=reg).run()


def quick_merge(
    sources: Sequence[Path | str],
    target: Path | str,
    *,
    columns: Sequence[str] | None = None,
    **kwargs: Any,
) -> JobResult:
    """Merge ``sources`` into ``target`` with default settings.

    ``columns`` selects and orders the output; by default the first
    source header is used.
    """
    schema = RecordSchema(tuple(columns)) if columns else None
    return merge(JobConfig.simple(sources, target, schema=schema, **kwargs))


def quick_merge_with_dedup(
    sources: Sequence[Path | str],
    target: Path | str,
    key_extractor: KeyExtractor,
    merge_function: MergeFunction | None = None,
    *,
    columns: Sequence[str] | None = None,
    **kwargs: Any,
) -> JobResult:
    """Merge ``sources`` keeping one record per key.

    Without ``merge_function`` the first record seen for a key wins.
    """
    schema = RecordSchema(tuple(columns)) if columns else None
    job = JobConfig.with_dedup(sources, target, key_extractor, merge_function, schema=schema, **kwargs)
    return merge(job)


def export_records(
    records: Iterable[Record],
    target: Path | str,
    columns: Sequence[str] | None = None,
    *,
    sheet_name: str = "Sheet1",
    registry: CodecRegistry | None = None,
) -> JobResult:
    """Write in-memory records straight to ``target`` with the batch writer.

    ``columns`` defaults to the keys of the first record.
    """
    started = time.monotonic()
    rows = list(records)
    out = Path(target)
    cols = list(columns) if columns else (list(rows[0].keys()) if rows else [])
    if not cols:
        return JobResult.failed(
            "invalid job configuration: no schema (output columns) given",
            operation="export",
            validation_errors=("no schema (output columns) given",),
            stage="validate",
        )
    reg = registry or default_codec_registry()
    if not reg.supports(out):
        msg = f"no codec for output target {out.name!r}"
        return JobResult.failed(f"invalid job configuration: {msg}", operation="export", validation_errors=(msg,), stage="validate")

    governor = ErrorGovernor(job_id="export")
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        encoder = reg.for_path(out).open_encoder(out, cols, sheet_name=sheet_name)
        with BatchWriter(encoder, governor=governor, target=str(out), job_id="export") as writer:
            writer.write(rows, expected_total=len(rows))
    except Exception as exc:  # noqa: BLE001
        log.error("export to %s failed: %s", out, exc)
        return JobResult.failed(
            f"{type(exc).__name__}: {exc}",
            operation="export",
            errors=tuple(governor.errors()),
            error_count=governor.error_count(),
            error_report=governor.report() if governor.has_errors() else None,
            stage="aborted",
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )
    log.info("exported %d record(s) to %s", writer.rows_written, out)
    return JobResult.ok(
        operation="export",
        total_rows=writer.rows_written,
        output_path=out,
        errors=tuple(governor.errors()),
        error_count=governor.error_count(),
        error_report=governor.report() if governor.has_errors() else None,
        elapsed_ms=int((time.monotonic() - started) * 1000),
    )


__all__ = [
    "infer_schema",
    "merge",
    "quick_merge",
    "quick_merge_with_dedup",
    "export_records",
]
