# config.py
# SPDX-License-Identifier: MIT
"""Job configuration: the runtime ``JobConfig`` and its declarative twin.

``JobConfig`` is the immutable description of one merge job, including
the caller-supplied functions (filter, key extractor, merge function,
callbacks). ``MergeConfig`` is purely declarative and serializable; it is
what TOML/JSON files load into, and :meth:`MergeConfig.to_job_config`
resolves its named filters and merge strategies into a ``JobConfig``.
"""
from __future__ import annotations

import json
import tomllib
import types
from collections.abc import Sequence as ABCSequence
from concurrent.futures import Executor
from dataclasses import dataclass, field, fields, is_dataclass, replace
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)

from .interfaces import ErrorCallback, KeyExtractor, MergeFunction, ProgressCallback, Record, RecordFilter
from .log import PACKAGE_LOGGER_NAME, configure_logging
from .registries import build_filter, build_merge, key_from_columns
from .schema import RecordSchema

DEFAULT_BATCH_SIZE = 5000
DEFAULT_MAX_CONCURRENT_FILES = 3
ERROR_DATA_SUFFIX = "_errors"

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PoolConfig:
    """Worker pool bounds and lifecycle timing.

    Sizes are clamped to the CPU count when the pool is created; see
    :func:`tabmerge.core.concurrency.resolve_pool_sizing`.
    """
    core_size: int = 2
    max_size: int = 4
    queue_capacity: int = 100
    keep_alive_s: float = 60.0
    monitor_interval_s: float = 5.0
    shutdown_timeout_s: float = 60.0
    force_shutdown: bool = True


@dataclass(frozen=True, slots=True)
class ErrorPolicy:
    """How failures are tolerated.

    ``max_error_count`` <= 0 means unlimited. ``continue_on_error=False``
    makes the job fail-fast.
    """
    continue_on_error: bool = True
    max_error_count: int = -1
    skip_invalid_data: bool = True
    collect_errors: bool = True
    log_errors: bool = True
    export_error_data: bool = False
    error_data_path: Optional[Path] = None

    @property
    def fail_fast(self) -> bool:
        return not self.continue_on_error


@dataclass(frozen=True, slots=True)
class MemoryConfig:
    threshold: float = 0.75
    check_every_rows: int = 50_000
    cooldown_s: float = 10.0
    budget_mb: Optional[float] = None
    pause_threshold: Optional[float] = None
    max_pause_s: float = 30.0


@dataclass(frozen=True, slots=True)
class ReaderConfig:
    progress_every_rows: int = 10_000
    read_timeout_s: float = 1800.0


@dataclass(frozen=True, slots=True)
class WriterConfig:
    chunk_size: int = DEFAULT_BATCH_SIZE
    auto_tune: bool = True
    sheet_name: str = "Sheet1"


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Controls the package logger when running from a config file."""
    level: str = "INFO"
    propagate: bool = False
    fmt: Optional[str] = None

    def apply(self) -> None:
        configure_logging(level=self.level, propagate=self.propagate, fmt=self.fmt, logger_name=PACKAGE_LOGGER_NAME)


# ---------------------------------------------------------------------------
# Runtime job description
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class JobConfig:
    """Everything one merge job needs, fixed for the job's lifetime.

    Attributes:
        sources (tuple[Path, ...]): Input files, any supported format.
        target (Path | None): Output file; its suffix selects the codec.
        schema (RecordSchema | None): Output columns and types.
        batch_size (int): Rows per batch handed from readers onward.
        max_concurrent_files (int): Files read at the same time.
        deduplicate (bool): Fold records by ``key_extractor``.
        filter (RecordFilter | Callable | None): Keep-predicate.
        key_extractor (KeyExtractor | None): Dedup key function.
        merge_function (MergeFunction | None): Collision resolver;
            first-seen wins when None.
        progress_callback (ProgressCallback | None): Progress sink.
        error_callback (ErrorCallback | None): Returns False to stop.
        executor (Executor | None): Externally owned pool to run reads
            on; it is never shut down by the job.
    """
    sources: Tuple[Path, ...] = ()
    target: Optional[Path] = None
    schema: Optional[RecordSchema] = None
    batch_size: int = DEFAULT_BATCH_SIZE
    max_concurrent_files: int = DEFAULT_MAX_CONCURRENT_FILES
    deduplicate: bool = False
    filter: RecordFilter | Callable[[Record], Any] | None = None
    key_extractor: KeyExtractor | None = None
    merge_function: MergeFunction | None = None
    progress_callback: ProgressCallback | None = None
    error_callback: ErrorCallback | None = None
    executor: Executor | None = None
    pool: PoolConfig = field(default_factory=PoolConfig)
    errors: ErrorPolicy = field(default_factory=ErrorPolicy)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    reader: ReaderConfig = field(default_factory=ReaderConfig)
    writer: WriterConfig = field(default_factory=WriterConfig)
    operation: str = "merge"

    def __post_init__(self) -> None:
        object.__setattr__(self, "sources", tuple(Path(s) for s in (self.sources or ())))
        target = self.target
        if isinstance(target, str):
            target = Path(target) if target.strip() else None
        object.__setattr__(self, "target", target)

    @property
    def effective_batch_size(self) -> int:
        return self.batch_size if self.batch_size > 0 else DEFAULT_BATCH_SIZE

    @property
    def effective_max_concurrent_files(self) -> int:
        return self.max_concurrent_files if self.max_concurrent_files > 0 else DEFAULT_MAX_CONCURRENT_FILES

    @property
    def fail_fast(self) -> bool:
        return self.errors.fail_fast

    def error_data_path(self) -> Path | None:
        """Where exported error records go, or None when export is off."""
        if not self.errors.export_error_data or self.target is None:
            return None
        if self.errors.error_data_path is not None:
            return Path(self.errors.error_data_path)
        target = self.target
        stem = target.name[: -len("".join(target.suffixes))] if target.suffixes else target.name
        return target.with_name(f"{stem}{ERROR_DATA_SUFFIX}.jsonl")

    def validation_errors(self) -> list[str]:
        """Return every structural problem; an empty list means valid.

        Only the local filesystem is consulted (existence of sources);
        nothing is opened or created.
        """
        problems: list[str] = []
        if not self.sources:
            problems.append("no source files given")
        for src in self.sources:
            if not src.exists():
                problems.append(f"source file not found: {src}")
            elif not src.is_file():
                problems.append(f"source is not a regular file: {src}")
        if self.target is None or not str(self.target).strip():
            problems.append("no output target given")
        elif any(_same_path(self.target, src) for src in self.sources):
            problems.append(f"output target {self.target} is also a source file")
        if self.schema is None:
            problems.append("no schema (output columns) given")
        else:
            problems.extend(self.schema.problems())
        if self.deduplicate and self.key_extractor is None:
            problems.append("deduplication is enabled but no key extractor is set")
        if self.merge_function is not None and not self.deduplicate:
            problems.append("a merge function requires deduplication to be enabled")
        if self.filter is not None and not callable(self.filter) and not isinstance(self.filter, RecordFilter):
            problems.append("filter must be callable or define accept(record)")
        err_path = self.error_data_path()
        if err_path is not None and self.target is not None and _same_path(err_path, self.target):
            problems.append("error data file must differ from the output target")
        return problems

    # -------------------------
    # Presets
    # -------------------------
    @classmethod
    def simple(cls, sources: Sequence[Path | str], target: Path | str, **kwargs: Any) -> "JobConfig":
        """Plain merge: no filter, no dedup, default error policy."""
        return cls(sources=tuple(sources), target=target, **kwargs)

    @classmethod
    def with_dedup(
        cls,
        sources: Sequence[Path | str],
        target: Path | str,
        key_extractor: KeyExtractor,
        merge_function: MergeFunction | None = None,
        **kwargs: Any,
    ) -> "JobConfig":
        return cls(
            sources=tuple(sources),
            target=target,
            deduplicate=True,
            key_extractor=key_extractor,
            merge_function=merge_function,
            **kwargs,
        )

    @classmethod
    def safe(cls, sources: Sequence[Path | str], target: Path | str, **kwargs: Any) -> "JobConfig":
        """Fail-fast job that exports every error record it sees."""
        errors = ErrorPolicy(continue_on_error=False, skip_invalid_data=False, export_error_data=True)
        return cls(sources=tuple(sources), target=target, errors=errors, **kwargs)

    def with_schema(self, schema: RecordSchema) -> "JobConfig":
        return replace(self, schema=schema)


def _same_path(a: Path, b: Path) -> bool:
    try:
        return a.resolve() == b.resolve()
    except OSError:
        return str(a) == str(b)


# ---------------------------------------------------------------------------
# Declarative config (TOML / JSON)
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class JobSection:
    sources: list[str] = field(default_factory=list)
    target: Optional[str] = None
    batch_size: int = DEFAULT_BATCH_SIZE
    max_concurrent_files: int = DEFAULT_MAX_CONCURRENT_FILES


@dataclass(slots=True)
class SchemaConfig:
    """Output columns; empty means "infer from the first source header"."""
    columns: list[str] = field(default_factory=list)
    types: Dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ProcessConfig:
    """Named filter/dedup/merge settings.

    ``filters`` is a list of ``{column, op, value}`` tables; ``merge`` is a
    strategy name such as ``keep_first`` or ``max:points``.
    """
    deduplicate: bool = False
    key_columns: list[str] = field(default_factory=list)
    merge: Optional[str] = None
    filters: list[Dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class MergeConfig:
    """Declarative, serializable description of a merge job.

    The TOML layout mirrors this dataclass: ``[job]``, ``[schema]``,
    ``[process]``, ``[pool]``, ``[errors]``, ``[memory]``, ``[reader]``,
    ``[writer]`` and ``[logging]`` tables.
    """
    job: JobSection = field(default_factory=JobSection)
    schema: SchemaConfig = field(default_factory=SchemaConfig)
    process: ProcessConfig = field(default_factory=ProcessConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    errors: ErrorPolicy = field(default_factory=ErrorPolicy)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    reader: ReaderConfig = field(default_factory=ReaderConfig)
    writer: WriterConfig = field(default_factory=WriterConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def validate(self) -> None:
        """Check the declarative parts that do not need the filesystem.

        Raises:
            ValueError: On unknown merge strategies or filter ops, a merge
                strategy without key columns, or dedup without key columns.
        """
        proc = self.process
        if proc.merge and not proc.key_columns:
            raise ValueError("process.merge requires process.key_columns")
        if proc.deduplicate and not proc.key_columns:
            raise ValueError("process.deduplicate requires process.key_columns")
        if proc.merge:
            build_merge(proc.merge)
        build_filter(proc.filters)
        if self.schema.columns:
            problems = RecordSchema(tuple(self.schema.columns), self.schema.types).problems()
            if problems:
                raise ValueError("; ".join(problems))

    def build_schema(self) -> RecordSchema | None:
        if not self.schema.columns:
            return None
        return RecordSchema(tuple(self.schema.columns), dict(self.schema.types))

    def to_job_config(
        self,
        *,
        schema: RecordSchema | None = None,
        progress_callback: ProgressCallback | None = None,
        error_callback: ErrorCallback | None = None,
        executor: Executor | None = None,
    ) -> JobConfig:
        """Resolve named callables and build the runtime ``JobConfig``.

        Key columns imply deduplication.
        """
        self.validate()
        proc = self.process
        dedup = bool(proc.deduplicate or proc.key_columns)
        return JobConfig(
            sources=tuple(Path(s) for s in self.job.sources),
            target=self.job.target,
            schema=schema or self.build_schema(),
            batch_size=self.job.batch_size,
            max_concurrent_files=self.job.max_concurrent_files,
            deduplicate=dedup,
            filter=build_filter(proc.filters),
            key_extractor=key_from_columns(proc.key_columns) if proc.key_columns else None,
            merge_function=build_merge(proc.merge) if proc.merge else None,
            progress_callback=progress_callback,
            error_callback=error_callback,
            executor=executor,
            pool=self.pool,
            errors=self.errors,
            memory=self.memory,
            reader=self.reader,
            writer=self.writer,
        )

    # -------------------------
    # Serialization helpers
    # -------------------------
    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-serializable representation of this configuration."""
        return _dataclass_to_dict(self)

    def to_json(self, path: Path | str, *, indent: int = 2) -> str:
        target = Path(path)
        target.write_text(json.dumps(self.to_dict(), indent=indent, sort_keys=True), encoding="utf-8")
        return str(target)

    @classmethod
    def from_dict(cls: Type[T], data: Mapping[str, Any]) -> T:
        return _dataclass_from_dict(cls, data)

    @classmethod
    def from_json(cls: Type[T], path: Path | str) -> T:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls.from_dict(payload)  # type: ignore[attr-defined]

    @classmethod
    def from_toml(cls: Type[T], path: Path | str) -> T:
        data = tomllib.loads(Path(path).read_bytes().decode("utf-8"))
        return cls.from_dict(data)  # type: ignore[attr-defined]


def load_config_from_path(path: str | Path) -> MergeConfig:
    """Load a MergeConfig from a ``.toml`` or ``.json`` file.

    Relative ``job.sources`` / ``job.target`` entries are resolved against
    the config file's directory.

    Raises:
        ValueError: If the file extension is not ``.toml`` or ``.json``.
    """
    p = Path(path)
    suffix = p.suffix.lower()
    if suffix == ".toml":
        cfg = MergeConfig.from_toml(p)
    elif suffix == ".json":
        cfg = MergeConfig.from_json(p)
    else:
        raise ValueError(f"Unsupported config extension {p.suffix!r}; expected .toml or .json.")
    base = p.parent
    cfg.job.sources = [str(_resolve_against(base, s)) for s in cfg.job.sources]
    if cfg.job.target:
        cfg.job.target = str(_resolve_against(base, cfg.job.target))
    return cfg


def _resolve_against(base: Path, value: str) -> Path:
    candidate = Path(value).expanduser()
    return candidate if candidate.is_absolute() else base / candidate


def _dataclass_to_dict(obj: Any) -> Dict[str, Any]:
    """Serialize dataclasses to JSON-friendly dicts, skipping None fields."""
    result: Dict[str, Any] = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if value is None:
            continue
        serialized = _serialize_value(value)
        if serialized is not None:
            result[f.name] = serialized
    return result


def _serialize_value(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_serialize_value(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _serialize_value(v) for k, v in value.items() if v is not None}
    if is_dataclass(value):
        return _dataclass_to_dict(value)
    return None


def _dataclass_from_dict(cls: Type[T], data: Mapping[str, Any] | None) -> T:
    """Instantiate dataclass ``cls`` from a mapping, rejecting unknown keys."""
    if data is None:
        return cls()  # type: ignore[call-arg]
    if not isinstance(data, Mapping):
        raise TypeError(f"{cls.__name__} expects a table/mapping; got {type(data).__name__}")
    known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown option(s) for {cls.__name__}: {', '.join(unknown)}")
    type_hints = get_type_hints(cls)
    kwargs: Dict[str, Any] = {}
    for f in fields(cls):  # type: ignore[arg-type]
        if f.name not in data:
            continue
        kwargs[f.name] = _coerce_value(type_hints.get(f.name, f.type), data[f.name])
    return cls(**kwargs)  # type: ignore[arg-type]


def _coerce_value(expected_type: Any, value: Any) -> Any:
    """Coerce ``value`` into the shape implied by ``expected_type``."""
    base_type = _strip_optional(expected_type)
    if value is None:
        return None
    if isinstance(base_type, type) and is_dataclass(base_type):
        return _dataclass_from_dict(base_type, value)
    origin = get_origin(base_type)
    if origin in (list, tuple, ABCSequence):
        args = get_args(base_type)
        inner = args[0] if args else Any
        items = [_coerce_value(inner, v) for v in value]
        return tuple(items) if origin is tuple else items
    if origin is dict:
        return dict(value)
    if base_type is Path:
        return Path(value)
    if base_type in {str, int, float}:
        return base_type(value)
    if base_type is bool:
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    return value


def _strip_optional(typ: Any) -> Any:
    """Return ``X`` for ``Optional[X]`` / ``X | None``; other types unchanged."""
    origin = get_origin(typ)
    if origin in (Union, types.UnionType):
        args = [arg for arg in get_args(typ) if arg is not type(None)]
        if len(args) == 1:
            return _strip_optional(args[0])
    return typ


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_MAX_CONCURRENT_FILES",
    "PoolConfig",
    "ErrorPolicy",
    "MemoryConfig",
    "ReaderConfig",
    "WriterConfig",
    "LoggingConfig",
    "JobConfig",
    "JobSection",
    "SchemaConfig",
    "ProcessConfig",
    "MergeConfig",
    "load_config_from_path",
]
