# jsonlio.py
# SPDX-License-Identifier: MIT
"""JSON Lines row codec: one JSON object per line, gzip-aware."""
from __future__ import annotations

import gzip
import json
import os
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path
from typing import Any, Self

from ..core.codec import BaseRowCodec, RowDecodeError, RowItem, is_blank_row
from ..core.errors import ReadError
from ..core.interfaces import Record

__all__ = ["JSONLCodec", "JSONLEncoder"]


def _open(path: Path, mode: str, *, gz: bool | None = None):
    if (path.suffix.lower() == ".gz") if gz is None else gz:
        return gzip.open(path, mode + "t", encoding="utf-8")
    return open(path, mode, encoding="utf-8", newline="")


def _dumps(record: Mapping[str, Any]) -> str:
    # default=str keeps dates and decimals readable instead of failing the chunk.
    return json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str)


class JSONLCodec(BaseRowCodec):
    """Decode and encode ``.jsonl`` / ``.ndjson`` files.

    Blank lines are skipped without consuming a row index; a line that is
    not a JSON object is reported as a row decode error.
    """

    name = "jsonl"

    def read_header(self, path: Path | str) -> list[str]:
        p = Path(path)
        with _open(p, "r") as fp:
            for line in fp:
                if not line.strip():
                    continue
                try:
                    obj = json.loads(line)
                except json.JSONDecodeError as exc:
                    raise ReadError(f"{p}: first record is not valid JSON: {exc}") from exc
                if isinstance(obj, dict):
                    return [str(k) for k in obj]
                raise ReadError(f"{p}: first record is not a JSON object")
        raise ReadError(f"{p} contains no records")

    def iter_rows(self, path: Path) -> Iterator[RowItem]:
        with _open(path, "r") as fp:
            row_index = -1
            for line in fp:
                if not line.strip():
                    continue
                row_index += 1
                try:
                    obj = json.loads(line)
                except json.JSONDecodeError as exc:
                    yield row_index, RowDecodeError(
                        f"invalid JSON: {exc.msg}", row_index=row_index, raw=line, cause=exc
                    )
                    continue
                if obj is None:
                    yield row_index, None
                elif not isinstance(obj, dict):
                    yield row_index, RowDecodeError(
                        f"expected a JSON object, got {type(obj).__name__}",
                        row_index=row_index,
                        raw=line,
                    )
                elif is_blank_row(obj):
                    yield row_index, None
                else:
                    yield row_index, obj

    def open_encoder(
        self,
        path: Path | str,
        columns: Sequence[str],
        *,
        sheet_name: str | None = None,
    ) -> "JSONLEncoder":
        return JSONLEncoder(path, columns)


class JSONLEncoder:
    """Write records as compact JSON lines through a temp file."""

    def __init__(self, path: str | os.PathLike[str], columns: Sequence[str] | None = None) -> None:
        self.path = Path(path)
        self.columns = list(columns) if columns else None
        self.rows_written = 0
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._tmp_path = self.path.with_name(self.path.name + ".tmp")
        self._fp = _open(self._tmp_path, "w", gz=self.path.suffix.lower() == ".gz")
        self._closed = False

    def encode(self, records: Sequence[Record]) -> None:
        if self._closed:
            raise RuntimeError(f"encoder for {self.path} is already finished")
        cols = self.columns
        lines = []
        for record in records:
            row = {c: record.get(c) for c in cols} if cols else dict(record)
            lines.append(_dumps(row) + "\n")
        self._fp.write("".join(lines))
        self.rows_written += len(records)

    def finish(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._fp.close()
        finally:
            os.replace(self._tmp_path, self.path)

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.finish()
