# interfaces.py
# SPDX-License-Identifier: MIT
"""Protocols shared by codecs, the batch stages and job callers."""

from __future__ import annotations

from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Hashable,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from pathlib import Path

    from .errors import ErrorRecord


# -----------------------------------------------------------------------------
# Shared data types
# -----------------------------------------------------------------------------

Record = Mapping[str, Any]
Batch = list[Record]

# Called by a decoder for each data row: (record or None for a blank row, row index).
OnRecord = Callable[[Optional[Record], int], None]
OnComplete = Callable[[], None]
# Called for a row the codec could not decode; returns False to stop decoding.
OnDecodeError = Callable[[BaseException], bool]


# -----------------------------------------------------------------------------
# Caller-supplied functions
# -----------------------------------------------------------------------------


@runtime_checkable
class RecordFilter(Protocol):
    """Decide whether a record should be kept."""

    def accept(self, record: Record) -> bool:
        """Return True to keep ``record``, False to drop it."""
        ...


@runtime_checkable
class KeyExtractor(Protocol):
    """Compute the dedup key of a record; None means "no key, drop it"."""

    def __call__(self, record: Record) -> Hashable | None:
        ...


@runtime_checkable
class MergeFunction(Protocol):
    """Combine two records sharing a key into the new representative.

    Calls are applied pairwise in processing order as
    ``merge(existing, incoming)``; commutativity is not assumed.
    """

    def __call__(self, existing: Record, incoming: Record) -> Record:
        ...


@runtime_checkable
class ProgressCallback(Protocol):
    """Receive progress updates; must return quickly.

    ``total`` is -1 when the amount of remaining work is unknown.
    """

    def __call__(self, current: int, total: int, phase: str, message: str | None = None) -> None:
        ...


@runtime_checkable
class ErrorCallback(Protocol):
    """Observe each recorded error; return False to stop the job."""

    def __call__(self, error: "ErrorRecord", error_count: int, phase: str) -> bool:
        ...


# -----------------------------------------------------------------------------
# Row codecs
# -----------------------------------------------------------------------------


@runtime_checkable
class RecordDecoder(Protocol):
    """Stream the rows of one tabular file through callbacks.

    Implementations call ``on_record`` once per data row in file order,
    ``on_error`` for rows that cannot be decoded (stopping when it returns
    False), and ``on_complete`` once the file is exhausted. Failures that
    make the whole file unreadable propagate as exceptions.
    """

    def decode(
        self,
        path: "Path | str",
        on_record: OnRecord,
        on_complete: OnComplete,
        on_error: OnDecodeError,
    ) -> None:
        ...

    def read_header(self, path: "Path | str") -> list[str]:
        """Return the column names of ``path`` without decoding its rows."""
        ...


@runtime_checkable
class RecordEncoder(Protocol):
    """Receive chunks of records for one output file.

    ``finish`` flushes and releases the file; calling it twice must be
    harmless.
    """

    def encode(self, records: Sequence[Record]) -> None:
        ...

    def finish(self) -> None:
        ...


@runtime_checkable
class RowCodec(RecordDecoder, Protocol):
    """A decoder that can also open an encoder for the same format."""

    def open_encoder(
        self,
        path: "Path | str",
        columns: Sequence[str],
        *,
        sheet_name: str | None = None,
    ) -> RecordEncoder:
        ...


def coerce_filter(obj: RecordFilter | Callable[[Record], Any] | None) -> Callable[[Record], bool] | None:
    """Normalize a filter object or plain predicate into a callable."""
    if obj is None:
        return None
    if isinstance(obj, RecordFilter):
        return obj.accept
    if callable(obj):
        return lambda record: bool(obj(record))
    raise TypeError(f"filter must be callable or define accept(); got {type(obj).__name__}")

