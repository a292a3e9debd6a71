# csvio.py
# SPDX-License-Identifier: MIT
"""CSV/TSV row codec (optionally gzip-compressed) built on the csv module."""

from __future__ import annotations

import csv
import gzip
import os
from collections.abc import Iterator, Sequence
from pathlib import Path

from ..core.codec import BaseRowCodec, RowDecodeError, RowItem, is_blank_row
from ..core.errors import ReadError
from ..core.interfaces import Record
from ..core.log import get_logger

__all__ = ["CSVCodec", "CSVEncoder"]

log = get_logger(__name__)


def _is_gz(path: Path) -> bool:
    return path.suffix.lower() == ".gz"


def _resolve_delimiter(path: Path, delimiter: str | None) -> str:
    if delimiter is not None:
        return delimiter
    return "\t" if ".tsv" in "".join(path.suffixes).lower() else ","


def _open_text(path: Path, mode: str, *, encoding: str, gz: bool | None = None):
    if _is_gz(path) if gz is None else gz:
        return gzip.open(path, mode + "t", encoding=encoding, newline="")
    # newline="" lets the csv module handle embedded newlines in quoted cells.
    return open(path, mode, encoding=encoding, newline="")


class CSVCodec(BaseRowCodec):
    """Read and write delimited text with a header row.

    Attributes:
        delimiter (str | None): Field separator; inferred from the suffix
            (``.tsv`` means tab) when None.
        encoding (str): Text encoding. The default ``utf-8-sig`` skips a
            byte-order mark on read.
    """

    name = "csv"

    def __init__(self, *, delimiter: str | None = None, encoding: str = "utf-8-sig") -> None:
        self.delimiter = delimiter
        self.encoding = encoding

    def read_header(self, path: Path | str) -> list[str]:
        p = Path(path)
        with _open_text(p, "r", encoding=self.encoding) as fp:
            reader = csv.reader(fp, delimiter=_resolve_delimiter(p, self.delimiter))
            header = next(reader, None)
        if not header:
            raise ReadError(f"{p} has no header row")
        return [h.strip() for h in header]

    def iter_rows(self, path: Path) -> Iterator[RowItem]:
        with _open_text(path, "r", encoding=self.encoding) as fp:
            reader = csv.reader(fp, delimiter=_resolve_delimiter(path, self.delimiter))
            try:
                header = next(reader)
            except StopIteration:
                return
            except csv.Error as exc:
                raise ReadError(f"{path}: unreadable header: {exc}") from exc
            columns = [h.strip() for h in header]
            width = len(columns)
            row_index = -1
            while True:
                row_index += 1
                try:
                    values = next(reader)
                except StopIteration:
                    return
                except csv.Error as exc:
                    yield row_index, RowDecodeError(
                        f"malformed CSV row: {exc}", row_index=row_index, cause=exc
                    )
                    continue
                if len(values) > width and not is_blank_row(values[width:]):
                    yield row_index, RowDecodeError(
                        f"row has {len(values)} fields, header has {width}",
                        row_index=row_index,
                        raw=values,
                    )
                    continue
                if is_blank_row(values):
                    yield row_index, None
                    continue
                padded = list(values[:width]) + [None] * (width - len(values))
                yield row_index, dict(zip(columns, padded))

    def open_encoder(
        self,
        path: Path | str,
        columns: Sequence[str],
        *,
        sheet_name: str | None = None,
    ) -> "CSVEncoder":
        return CSVEncoder(Path(path), columns, delimiter=self.delimiter, encoding="utf-8")


class CSVEncoder:
    """Write records to a delimited file, header first.

    Rows go to ``<path>.tmp`` and the file is moved into place by
    :meth:`finish`, so a crashed run never leaves a half-written target.
    """

    def __init__(
        self,
        path: Path,
        columns: Sequence[str],
        *,
        delimiter: str | None = None,
        encoding: str = "utf-8",
    ) -> None:
        self.path = Path(path)
        self.columns = list(columns)
        self.rows_written = 0
        self._tmp_path = self.path.with_name(self.path.name + ".tmp")
        self._fp = _open_text(self._tmp_path, "w", encoding=encoding, gz=_is_gz(self.path))
        self._writer = csv.DictWriter(
            self._fp,
            fieldnames=self.columns,
            delimiter=_resolve_delimiter(self.path, delimiter),
            extrasaction="ignore",
        )
        self._writer.writeheader()
        self._closed = False

    def encode(self, records: Sequence[Record]) -> None:
        if self._closed:
            raise RuntimeError(f"encoder for {self.path} is already finished")
        self._writer.writerows(records)
        self.rows_written += len(records)

    def finish(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._fp.close()
        os.replace(self._tmp_path, self.path)
        log.debug("wrote %d rows to %s", self.rows_written, self.path)
