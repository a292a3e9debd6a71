# processor.py
# SPDX-License-Identifier: MIT
"""Batch processor: filter, then key-based deduplication with merging.

Filtering preserves input order. Deduplication folds records into a
:class:`UniqueKeyMap` in processing order, applying
``merge(existing, incoming)`` pairwise on key collisions; the order of the
deduplicated output is not part of the contract.

Every failure of a caller-supplied function is converted into a
``process`` :class:`~tabmerge.core.errors.ErrorRecord`; the job only stops
when the governor says so.
"""
from __future__ import annotations

import threading
from collections.abc import Callable, Hashable, Iterable, Sequence
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Any

from .errors import ErrorRecord, JobAborted, ProcessError
from .governor import ErrorGovernor
from .interfaces import KeyExtractor, MergeFunction, ProgressCallback, Record, RecordFilter, coerce_filter
from .log import job_logger
from .progress import notify_progress

__all__ = ["PROCESS_CHUNK_SIZE", "ProcessStats", "UniqueKeyMap", "BatchProcessor"]

PROCESS_CHUNK_SIZE = 100_000
# Key extraction is split across the executor only for chunks at least this large.
_PARALLEL_KEY_MIN = 20_000

_NO_KEY = object()


@dataclass(slots=True)
class ProcessStats:
    filtered_in: int = 0
    filtered_out: int = 0
    filter_errors: int = 0
    null_keys: int = 0
    key_errors: int = 0
    merges: int = 0
    merge_errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "filtered_in": self.filtered_in,
            "filtered_out": self.filtered_out,
            "filter_errors": self.filter_errors,
            "null_keys": self.null_keys,
            "key_errors": self.key_errors,
            "merges": self.merges,
            "merge_errors": self.merge_errors,
        }


class UniqueKeyMap:
    """Lock-protected ``key -> representative record`` map.

    Lives for one processing phase only; :meth:`drain` hands the
    representatives out and empties the map.
    """

    def __init__(self) -> None:
        self._data: dict[Hashable, Record] = {}
        self._lock = threading.Lock()

    def fold(
        self,
        key: Hashable,
        record: Record,
        merge: MergeFunction | None,
        on_merge_error: Callable[[Record, Record, BaseException], None],
    ) -> bool:
        """Insert or merge ``record`` under ``key``; return True on collision."""
        with self._lock:
            existing = self._data.get(key, _NO_KEY)
            if existing is _NO_KEY:
                self._data[key] = record
                return False
            if merge is None:
                return True
            try:
                merged = merge(existing, record)  # type: ignore[arg-type]
                if merged is None:
                    raise ValueError("merge function returned None")
            except Exception as exc:  # noqa: BLE001
                on_merge_error(existing, record, exc)  # type: ignore[arg-type]
                return True
            self._data[key] = merged
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def drain(self) -> list[Record]:
        with self._lock:
            out = list(self._data.values())
            self._data.clear()
        return out


class BatchProcessor:
    """Apply the job's filter and dedup/merge to record sequences.

    Args:
        governor: Receives every filter, key and merge failure.
        filter: Keep-predicate (callable or object with ``accept``).
        key_extractor: Dedup key function; a None key drops the record.
        merge_function: Collision resolver; first-seen wins when None.
        deduplicate: Enable the dedup stage.
        skip_invalid_data: Treat a failing predicate as "exclude";
            otherwise the record is kept.
        chunk_size: Inputs larger than this are processed in chunks.
        executor: Optional pool used to compute keys of large chunks in
            parallel. Never pass the pool whose threads call into this
            processor.
        progress: Progress callback for chunked runs.
    """

    def __init__(
        self,
        *,
        governor: ErrorGovernor,
        filter: RecordFilter | Callable[[Record], Any] | None = None,
        key_extractor: KeyExtractor | None = None,
        merge_function: MergeFunction | None = None,
        deduplicate: bool = False,
        skip_invalid_data: bool = True,
        chunk_size: int = PROCESS_CHUNK_SIZE,
        executor: Executor | None = None,
        progress: ProgressCallback | None = None,
        job_id: str | None = None,
    ) -> None:
        if deduplicate and key_extractor is None:
            raise ValueError("deduplication requires a key extractor")
        self.governor = governor
        self._predicate = coerce_filter(filter)
        self.key_extractor = key_extractor
        self.merge_function = merge_function
        self.deduplicate_enabled = bool(deduplicate)
        self.skip_invalid_data = skip_invalid_data
        self.chunk_size = max(1, int(chunk_size))
        self.executor = executor
        self.progress = progress
        self.job_id = job_id or "-"
        self.log = job_logger(__name__, self.job_id)
        self.stats = ProcessStats()
        self._stats_lock = threading.Lock()

    def _bump(self, name: str, n: int = 1) -> None:
        with self._stats_lock:
            setattr(self.stats, name, getattr(self.stats, name) + n)

    def _fail(self, error: ErrorRecord) -> None:
        if self.governor.record_error(error):
            failure = ProcessError(f"{error.detail} failed: {error.message}")
            failure.__cause__ = error.cause
            raise JobAborted(self.governor.stop_reason or "error governor requested stop", error) from failure

    def _chunks(self, rows: Sequence[Record]) -> Iterable[Sequence[Record]]:
        for start in range(0, len(rows), self.chunk_size):
            yield rows[start:start + self.chunk_size]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def process(self, rows: Sequence[Record]) -> list[Record]:
        """Filter ``rows`` then deduplicate them (when enabled)."""
        kept = self.filter(rows)
        if not self.deduplicate_enabled:
            return kept
        return self.deduplicate(kept)

    def filter(self, rows: Sequence[Record]) -> list[Record]:
        """Return the records the predicate keeps, in input order."""
        rows = rows if isinstance(rows, Sequence) else list(rows)
        if self._predicate is None:
            self._bump("filtered_in", len(rows))
            return list(rows)
        if len(rows) <= self.chunk_size:
            return self._filter_chunk(rows)
        kept: list[Record] = []
        done = 0
        for chunk in self._chunks(rows):
            kept.extend(self._filter_chunk(chunk))
            done += len(chunk)
            notify_progress(self.progress, done, len(rows), "filter", f"{len(kept)} kept")
        self.log.debug("filtered %d -> %d rows in chunks of %d", len(rows), len(kept), self.chunk_size)
        return kept

    def deduplicate(self, rows: Sequence[Record]) -> list[Record]:
        """Fold ``rows`` into a fresh key map and return its representatives."""
        if self.key_extractor is None:
            raise ValueError("deduplicate() requires a key extractor")
        rows = rows if isinstance(rows, Sequence) else list(rows)
        key_map = UniqueKeyMap()
        if len(rows) <= self.chunk_size:
            self.fold(rows, key_map)
        else:
            done = 0
            for chunk in self._chunks(rows):
                self.fold(chunk, key_map)
                done += len(chunk)
                notify_progress(self.progress, done, len(rows), "dedup", f"{len(key_map)} unique keys")
        result = key_map.drain()
        self.log.debug("deduplicated %d -> %d rows", len(rows), len(result))
        return result

    def fold(self, rows: Sequence[Record], key_map: UniqueKeyMap) -> None:
        """Fold ``rows`` into an existing ``key_map`` in order."""
        keys = self._extract_keys(rows)
        for record, key in zip(rows, keys):
            if key is _NO_KEY:
                continue
            if key is None:
                self._bump("null_keys")
                continue
            if key_map.fold(key, record, self.merge_function, self._on_merge_error):
                self._bump("merges")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _filter_chunk(self, rows: Sequence[Record]) -> list[Record]:
        predicate = self._predicate
        assert predicate is not None
        kept: list[Record] = []
        dropped = 0
        for record in rows:
            try:
                keep = predicate(record)
            except Exception as exc:  # noqa: BLE001
                self._bump("filter_errors")
                self._fail(
                    ErrorRecord.process_error("filter", f"filter raised: {exc}", record=record, cause=exc)
                )
                keep = not self.skip_invalid_data
            if keep:
                kept.append(record)
            else:
                dropped += 1
        self._bump("filtered_in", len(kept))
        self._bump("filtered_out", dropped)
        return kept

    def _extract_keys(self, rows: Sequence[Record]) -> list[Any]:
        if self.executor is not None and len(rows) >= _PARALLEL_KEY_MIN:
            step = max(_PARALLEL_KEY_MIN // 4, 1)
            futures = [
                self.executor.submit(self._keys_serial, rows[i:i + step])
                for i in range(0, len(rows), step)
            ]
            keys: list[Any] = []
            for fut in futures:
                keys.extend(fut.result())
            errors = [(rows[i], k) for i, k in enumerate(keys) if isinstance(k, _KeyFailure)]
            for record, failure in errors:
                self._key_failed(record, failure.exc)
            return [_NO_KEY if isinstance(k, _KeyFailure) else k for k in keys]
        keys = self._keys_serial(rows)
        for i, key in enumerate(keys):
            if isinstance(key, _KeyFailure):
                self._key_failed(rows[i], key.exc)
                keys[i] = _NO_KEY
        return keys

    def _keys_serial(self, rows: Sequence[Record]) -> list[Any]:
        extract = self.key_extractor
        assert extract is not None
        out: list[Any] = []
        for record in rows:
            try:
                key = extract(record)
                if key is not None:
                    hash(key)
                out.append(key)
            except Exception as exc:  # noqa: BLE001
                out.append(_KeyFailure(exc))
        return out

    def _key_failed(self, record: Record, exc: BaseException) -> None:
        self._bump("key_errors")
        self._fail(ErrorRecord.process_error("key", f"key extraction failed: {exc}", record=record, cause=exc))

    def _on_merge_error(self, existing: Record, incoming: Record, exc: BaseException) -> None:
        self._bump("merge_errors")
        self._fail(
            ErrorRecord.process_error(
                "merge",
                f"merge failed, keeping existing record: {exc}",
                record=incoming,
                cause=exc,
            )
        )


class _KeyFailure:
    __slots__ = ("exc",)

    def __init__(self, exc: BaseException) -> None:
        self.exc = exc
