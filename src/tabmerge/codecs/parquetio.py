# parquetio.py
# SPDX-License-Identifier: MIT
"""Parquet row codec backed by pyarrow.

Reads stream record batches through ``ParquetFile.iter_batches`` so a
large file never has to fit in memory. Writes go through a single
``ParquetWriter`` whose schema is inferred from the first chunk.
"""

from __future__ import annotations

import os
from collections.abc import Iterator, Sequence
from pathlib import Path

import pyarrow as pa
import pyarrow.parquet as pq

from ..core.codec import BaseRowCodec, RowItem, is_blank_row
from ..core.interfaces import Record
from ..core.log import get_logger

__all__ = ["ParquetCodec", "ParquetEncoder"]

log = get_logger(__name__)

DEFAULT_READ_BATCH = 8192


class ParquetCodec(BaseRowCodec):
    """Decode and encode ``.parquet`` files."""

    name = "parquet"

    def __init__(self, *, read_batch_size: int = DEFAULT_READ_BATCH) -> None:
        self.read_batch_size = max(1, int(read_batch_size))

    def read_header(self, path: Path | str) -> list[str]:
        return list(pq.ParquetFile(str(path)).schema_arrow.names)

    def iter_rows(self, path: Path) -> Iterator[RowItem]:
        pf = pq.ParquetFile(str(path))
        try:
            row_index = -1
            for batch in pf.iter_batches(batch_size=self.read_batch_size):
                for row in batch.to_pylist():
                    row_index += 1
                    yield row_index, (None if is_blank_row(row) else row)
        finally:
            pf.close()

    def open_encoder(
        self,
        path: Path | str,
        columns: Sequence[str],
        *,
        sheet_name: str | None = None,
    ) -> "ParquetEncoder":
        return ParquetEncoder(path, columns)


class ParquetEncoder:
    """Append record chunks to one Parquet file.

    Columns that are entirely null in the first chunk are typed as
    strings. Later chunks are converted to the established schema, so a
    chunk whose values do not fit raises and is reported as a failed chunk.
    """

    def __init__(self, path: str | os.PathLike[str], columns: Sequence[str], *, compression: str = "snappy") -> None:
        self.path = Path(path)
        self.columns = list(columns)
        self.compression = compression
        self.rows_written = 0
        self._tmp_path = self.path.with_name(self.path.name + ".tmp")
        self._writer: pq.ParquetWriter | None = None
        self._schema: pa.Schema | None = None
        self._closed = False

    def _infer_schema(self, table: pa.Table) -> pa.Schema:
        fields = []
        for f in table.schema:
            fields.append(pa.field(f.name, pa.string()) if pa.types.is_null(f.type) else f)
        return pa.schema(fields)

    def encode(self, records: Sequence[Record]) -> None:
        if self._closed:
            raise RuntimeError(f"encoder for {self.path} is already finished")
        if not records:
            return
        data = {c: [r.get(c) for r in records] for c in self.columns}
        if self._schema is None:
            self._schema = self._infer_schema(pa.table(data))
            self._writer = pq.ParquetWriter(str(self._tmp_path), self._schema, compression=self.compression)
        table = pa.Table.from_pydict(data, schema=self._schema)
        assert self._writer is not None
        self._writer.write_table(table)
        self.rows_written += len(records)

    def finish(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._writer is None:
            schema = pa.schema([(c, pa.string()) for c in self.columns])
            pq.write_table(schema.empty_table(), str(self._tmp_path))
        else:
            self._writer.close()
        os.replace(self._tmp_path, self.path)
        log.debug("wrote %d rows to %s", self.rows_written, self.path)
