# errors.py
# SPDX-License-Identifier: MIT
"""Failure taxonomy and the immutable error record used across a job.

Every non-validation failure is turned into an :class:`ErrorRecord` at the
site where it happens and handed to the job's error governor. Exceptions
in this module are what escapes a stage once the governor decides the job
must stop, or what pre-flight validation raises before any I/O starts.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

__all__ = [
    "Phase",
    "ErrorRecord",
    "TabMergeError",
    "ValidationError",
    "ReadError",
    "ProcessError",
    "WriteError",
    "SchemaError",
    "JobAborted",
]


class Phase:
    """Pipeline phases an error can be attributed to."""

    READ = "read"
    TRANSFORM = "transform"
    PROCESS = "process"
    WRITE = "write"
    ALL = (READ, TRANSFORM, PROCESS, WRITE)

    @classmethod
    def normalize(cls, value: str | None) -> str:
        phase = (value or "").strip().lower()
        if phase not in cls.ALL:
            raise ValueError(f"Unknown phase {value!r}; expected one of {list(cls.ALL)}")
        return phase


class TabMergeError(Exception):
    """Base class for tabmerge failures."""


class ValidationError(TabMergeError):
    """Pre-flight configuration problems; raised before any file is touched."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("invalid job configuration: " + "; ".join(self.errors))


class ReadError(TabMergeError):
    """A source file could not be opened or decoded."""


class ProcessError(TabMergeError):
    """A filter, key extractor or merge function failed.

    Raised by the processor as the cause of the :class:`JobAborted` that
    ends a job; its own ``__cause__`` is the caller function's exception.
    """


class WriteError(TabMergeError):
    """The output codec rejected a chunk or could not be finalized."""


class SchemaError(TabMergeError):
    """A decoded value could not be converted to its declared column type."""

    def __init__(self, column: str, value: Any, cause: BaseException | None = None) -> None:
        self.column = column
        self.value = value
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"column {column!r} cannot convert {value!r}{detail}")


@dataclass(frozen=True, slots=True)
class ErrorRecord:
    """One failure observed while running a job.

    Attributes:
        phase (str): One of :class:`Phase` values.
        message (str): Human-readable description.
        source (str | None): Source file (or output target for write
            errors) the failure belongs to.
        row_index (int): Zero-based data row within ``source``; -1 when the
            failure is not tied to a row.
        record (Any): Offending record, when one is available.
        cause (BaseException | None): Underlying exception.
        detail (str | None): Sub-phase such as ``"filter"`` or ``"merge"``.
        timestamp (float): Wall-clock time the record was created.
    """

    phase: str
    message: str
    source: str | None = None
    row_index: int = -1
    record: Any = None
    cause: BaseException | None = None
    detail: str | None = None
    timestamp: float = field(default_factory=time.time)

    @property
    def phase_label(self) -> str:
        return f"{self.phase}:{self.detail}" if self.detail else self.phase

    @classmethod
    def read_error(
        cls,
        source: str | None,
        row_index: int,
        message: str,
        *,
        record: Any = None,
        cause: BaseException | None = None,
    ) -> "ErrorRecord":
        return cls(Phase.READ, message, source, row_index, record, cause)

    @classmethod
    def convert_error(
        cls,
        source: str | None,
        row_index: int,
        message: str,
        *,
        record: Any = None,
        cause: BaseException | None = None,
    ) -> "ErrorRecord":
        return cls(Phase.TRANSFORM, message, source, row_index, record, cause)

    @classmethod
    def process_error(
        cls,
        detail: str,
        message: str,
        *,
        record: Any = None,
        cause: BaseException | None = None,
    ) -> "ErrorRecord":
        return cls(Phase.PROCESS, message, None, -1, record, cause, detail)

    @classmethod
    def write_error(
        cls,
        target: str | None,
        message: str,
        *,
        record: Any = None,
        cause: BaseException | None = None,
    ) -> "ErrorRecord":
        return cls(Phase.WRITE, message, target, -1, record, cause)

    def short_description(self) -> str:
        where = self.source or "unknown"
        row = str(self.row_index) if self.row_index >= 0 else "unknown"
        return f"[{self.phase_label}] {where} row={row}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-friendly view, used by the error-data export."""
        record = self.record
        if record is not None and not isinstance(record, dict):
            try:
                record = dict(record)
            except (TypeError, ValueError):
                record = repr(record)
        return {
            "phase": self.phase,
            "detail": self.detail,
            "source": self.source,
            "row_index": self.row_index,
            "message": self.message,
            "cause": f"{type(self.cause).__name__}: {self.cause}" if self.cause is not None else None,
            "timestamp": self.timestamp,
            "record": record,
        }


class JobAborted(TabMergeError):
    """Raised inside a stage once the governor decides the job must stop."""

    def __init__(self, reason: str, error: ErrorRecord | None = None) -> None:
        self.reason = reason
        self.error = error
        super().__init__(reason)
