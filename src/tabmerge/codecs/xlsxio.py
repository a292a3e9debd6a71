# xlsxio.py
# SPDX-License-Identifier: MIT
"""Excel ``.xlsx`` row codec built on openpyxl's streaming modes.

Reading opens workbooks with ``read_only=True, data_only=True`` so rows
stream from the archive and formula cells yield their cached values.
Writing uses a ``write_only`` workbook, which spools rows instead of
building the sheet in memory. Styles, merged cells and formulas are not
carried over.
"""
from __future__ import annotations

import os
from collections.abc import Iterator, Sequence
from pathlib import Path

import openpyxl

from ..core.codec import BaseRowCodec, RowDecodeError, RowItem, is_blank_row
from ..core.errors import ReadError
from ..core.interfaces import Record
from ..core.log import get_logger

__all__ = ["XLSXCodec", "XLSXEncoder"]

log = get_logger(__name__)


def _header_names(row: Sequence[object]) -> list[str]:
    names = [("" if v is None else str(v).strip()) for v in row]
    while names and not names[-1]:
        names.pop()
    return [name or f"column_{idx + 1}" for idx, name in enumerate(names)]


class XLSXCodec(BaseRowCodec):
    """Decode the first (or a named) worksheet and encode one sheet.

    Attributes:
        sheet_name (str | None): Worksheet to read; the first sheet when
            None.
    """

    name = "xlsx"

    def __init__(self, *, sheet_name: str | None = None) -> None:
        self.sheet_name = sheet_name

    def _worksheet(self, wb, path: Path):
        if self.sheet_name is None:
            return wb.worksheets[0]
        if self.sheet_name not in wb.sheetnames:
            raise ReadError(f"{path} has no worksheet named {self.sheet_name!r}")
        return wb[self.sheet_name]

    def read_header(self, path: Path | str) -> list[str]:
        p = Path(path)
        wb = openpyxl.load_workbook(str(p), read_only=True, data_only=True)
        try:
            ws = self._worksheet(wb, p)
            for row in ws.iter_rows(max_row=1, values_only=True):
                header = _header_names(row)
                if header:
                    return header
        finally:
            wb.close()
        raise ReadError(f"{p} has no header row")

    def iter_rows(self, path: Path) -> Iterator[RowItem]:
        wb = openpyxl.load_workbook(str(path), read_only=True, data_only=True)
        try:
            ws = self._worksheet(wb, path)
            rows = ws.iter_rows(values_only=True)
            header_row = next(rows, None)
            if header_row is None:
                return
            columns = _header_names(header_row)
            width = len(columns)
            for row_index, values in enumerate(rows):
                if len(values) > width and not is_blank_row(values[width:]):
                    yield row_index, RowDecodeError(
                        f"row has {len(values)} cells, header has {width}",
                        row_index=row_index,
                        raw=list(values),
                    )
                    continue
                cells = list(values[:width]) + [None] * (width - len(values))
                if is_blank_row(cells):
                    yield row_index, None
                    continue
                yield row_index, dict(zip(columns, cells))
        finally:
            wb.close()

    def open_encoder(
        self,
        path: Path | str,
        columns: Sequence[str],
        *,
        sheet_name: str | None = None,
    ) -> "XLSXEncoder":
        return XLSXEncoder(path, columns, sheet_name=sheet_name or self.sheet_name or "Sheet1")


class XLSXEncoder:
    """Stream records into a write-only workbook saved on :meth:`finish`."""

    def __init__(self, path: str | os.PathLike[str], columns: Sequence[str], *, sheet_name: str = "Sheet1") -> None:
        self.path = Path(path)
        self.columns = list(columns)
        self.rows_written = 0
        self._wb = openpyxl.Workbook(write_only=True)
        self._ws = self._wb.create_sheet(sheet_name)
        self._ws.append(self.columns)
        self._closed = False

    def encode(self, records: Sequence[Record]) -> None:
        if self._closed:
            raise RuntimeError(f"encoder for {self.path} is already finished")
        for record in records:
            self._ws.append([record.get(c) for c in self.columns])
        self.rows_written += len(records)

    def finish(self) -> None:
        if self._closed:
            return
        self._closed = True
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        self._wb.save(str(tmp_path))
        os.replace(tmp_path, self.path)
        log.debug("wrote %d rows to %s", self.rows_written, self.path)
