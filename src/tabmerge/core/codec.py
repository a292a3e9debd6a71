# codec.py
# SPDX-License-Identifier: MIT
"""Base class adapting a row iterator to the callback decode contract.

Concrete codecs only implement :meth:`BaseRowCodec.iter_rows`, yielding
``(row_index, item)`` pairs where ``item`` is a record mapping, ``None``
for a row with no values, or a :class:`RowDecodeError` for a row that
could not be decoded. Errors that make the whole file unusable are raised
from ``iter_rows`` and propagate out of :meth:`decode`.
"""
from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from contextlib import closing
from pathlib import Path
from typing import Any

from .errors import ReadError
from .interfaces import OnComplete, OnDecodeError, OnRecord, Record, RecordEncoder

__all__ = ["RowDecodeError", "BaseRowCodec", "RowItem", "is_blank_row"]


class RowDecodeError(ReadError):
    """A single row could not be decoded; the file itself is still readable."""

    def __init__(
        self,
        message: str,
        *,
        row_index: int = -1,
        raw: Any = None,
        cause: BaseException | None = None,
    ) -> None:
        self.row_index = row_index
        self.raw = raw
        self.cause = cause
        super().__init__(message)


RowItem = tuple[int, Record | None | RowDecodeError]


def is_blank_row(values: Sequence[Any] | Mapping[str, Any]) -> bool:
    """True when every cell is None or whitespace."""
    cells = values.values() if isinstance(values, Mapping) else values
    for cell in cells:
        if cell is None:
            continue
        if isinstance(cell, str) and not cell.strip():
            continue
        return False
    return True


class BaseRowCodec:
    """Shared decode loop for row codecs."""

    name = "base"

    def iter_rows(self, path: Path) -> Iterator[RowItem]:
        raise NotImplementedError

    def read_header(self, path: Path | str) -> list[str]:
        raise NotImplementedError

    def open_encoder(
        self,
        path: Path | str,
        columns: Sequence[str],
        *,
        sheet_name: str | None = None,
    ) -> RecordEncoder:
        raise NotImplementedError

    def decode(
        self,
        path: Path | str,
        on_record: OnRecord,
        on_complete: OnComplete,
        on_error: OnDecodeError,
    ) -> None:
        """Stream ``path`` through the callbacks.

        ``on_complete`` is not called when ``on_error`` asks to stop or a
        callback raises.
        """
        with closing(self.iter_rows(Path(path))) as rows:
            for row_index, item in rows:
                if isinstance(item, RowDecodeError):
                    if not on_error(item):
                        return
                    continue
                on_record(item, row_index)
        on_complete()

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"
