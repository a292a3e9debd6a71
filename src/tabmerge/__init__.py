# __init__.py
# SPDX-License-Identifier: MIT
"""
Top-level package exports for :mod:`tabmerge`.

Public surface and stability
----------------------------
tabmerge exposes a small stable API. The symbols listed in
:data:`PRIMARY_API` are the recommended public surface and are exported
via :data:`__all__`. Most callers:

- Describe a job with :class:`JobConfig` (runtime callables) or
  :class:`MergeConfig` (declarative; load one from TOML/JSON with
  :func:`load_config_from_path`).
- Run it with :func:`merge`, or use :func:`quick_merge` /
  :func:`quick_merge_with_dedup` for the common cases.
- Inspect the returned :class:`JobResult`; job failures are reported
  there instead of being raised.

Concurrency and memory
----------------------
Files are read on a bounded worker pool (see :class:`PoolConfig`), at
most ``max_concurrent_files`` at a time. Memory is sampled with psutil
and reclaimed with ``gc.collect()`` when usage crosses
``MemoryConfig.threshold``.

Advanced / expert surface
-------------------------
Anything imported here but *not* listed in :data:`PRIMARY_API` is an
expert surface and may change between releases.

Examples:
    Merge three CSV files into one workbook::

        >>> from tabmerge import quick_merge
        >>> result = quick_merge(["a.csv", "b.csv", "c.csv"], "out/all.xlsx")
        >>> result.success, result.total_rows

    Keep one row per ``id``, preferring the highest ``points``::

        >>> from tabmerge import build_merge, key_from_columns, quick_merge_with_dedup
        >>> result = quick_merge_with_dedup(
        ...     ["a.csv", "b.csv"], "out/best.csv",
        ...     key_from_columns(["id"]), build_merge("max:points"),
        ... )
"""


from __future__ import annotations

# ---------------------------------------------------------------------------
# Package version
# ---------------------------------------------------------------------------
try:
    from importlib.metadata import version as _pkg_version

    __version__ = _pkg_version("tabmerge")
except Exception:  # PackageNotFoundError when running from a source checkout
    __version__ = "0.0.0+unknown"


# ---------------------------------------------------------------------------
# Primary public API (stable; exported via __all__)
# ---------------------------------------------------------------------------
from .cli.runner import export_records, infer_schema, merge, quick_merge, quick_merge_with_dedup
from .core.config import (
    ErrorPolicy,
    JobConfig,
    LoggingConfig,
    MemoryConfig,
    MergeConfig,
    PoolConfig,
    ReaderConfig,
    WriterConfig,
    load_config_from_path,
)
from .core.errors import (
    ErrorRecord,
    JobAborted,
    Phase,
    ProcessError,
    ReadError,
    SchemaError,
    TabMergeError,
    ValidationError,
    WriteError,
)
from .core.pipeline import JobResult, MergePipeline
from .core.registries import build_filter, build_merge, key_from_columns, parse_filter_expression
from .core.schema import RecordSchema

# ---------------------------------------------------------------------------
# Advanced / expert API (imported for convenience; not exported via __all__)
# ---------------------------------------------------------------------------
from .core.concurrency import ResourcePoolManager, WorkerPool, run_in_waves
from .core.governor import ErrorGovernor
from .core.interfaces import (
    ErrorCallback,
    KeyExtractor,
    MergeFunction,
    ProgressCallback,
    Record,
    RecordFilter,
    RowCodec,
)
from .core.log import configure_logging, get_logger, job_logger, temp_level
from .core.memory import MemoryGuard
from .core.processor import BatchProcessor, UniqueKeyMap
from .core.reader import BatchReader
from .core.registries import CodecRegistry, default_codec_registry
from .core.writer import BatchWriter

# ---------------------------------------------------------------------------
# Stable export list
# ---------------------------------------------------------------------------
PRIMARY_API = [
    "__version__",
    "JobConfig",
    "MergeConfig",
    "PoolConfig",
    "ErrorPolicy",
    "MemoryConfig",
    "ReaderConfig",
    "WriterConfig",
    "LoggingConfig",
    "load_config_from_path",
    "RecordSchema",
    "merge",
    "quick_merge",
    "quick_merge_with_dedup",
    "export_records",
    "infer_schema",
    "MergePipeline",
    "JobResult",
    "ErrorRecord",
    "Phase",
    "TabMergeError",
    "ValidationError",
    "ReadError",
    "ProcessError",
    "WriteError",
    "SchemaError",
    "JobAborted",
    "key_from_columns",
    "build_merge",
    "build_filter",
    "parse_filter_expression",
]

# Export the stable surface area only.
__all__ = list(PRIMARY_API)
