import datetime as dt
import gzip
import json
from pathlib import Path

import openpyxl
import pyarrow.parquet as pq
import pytest

from tabmerge.codecs.csvio import CSVCodec
from tabmerge.codecs.jsonlio import JSONLCodec, JSONLEncoder
from tabmerge.codecs.parquetio import ParquetCodec
from tabmerge.codecs.xlsxio import XLSXCodec
from tabmerge.core.codec import RowDecodeError
from tabmerge.core.errors import ReadError


def _decode(codec, path, stop_on_error=False):
    records, errors, done = [], [], []
    codec.decode(
        path,
        lambda rec, idx: records.append((idx, rec)),
        lambda: done.append(True),
        lambda err: errors.append(err) or not stop_on_error,
    )
    return records, errors, bool(done)


def test_csv_rows_blank_rows_and_extra_fields(tmp_path: Path):
    src = tmp_path / "a.csv"
    src.write_text("id,name,pts\n1,ann,5\n\n2,bob\n3,cy,7,extra\n", encoding="utf-8")
    records, errors, done = _decode(CSVCodec(), src)
    assert done
    assert records == [
        (0, {"id": "1", "name": "ann", "pts": "5"}),
        (1, None),
        (2, {"id": "2", "name": "bob", "pts": None}),
    ]
    assert len(errors) == 1
    assert isinstance(errors[0], RowDecodeError)
    assert errors[0].row_index == 3
    assert errors[0].raw == ["3", "cy", "7", "extra"]


def test_csv_stops_without_completion_when_error_handler_says_so(tmp_path: Path):
    src = tmp_path / "a.csv"
    src.write_text("id\n1\n2,3\n4\n", encoding="utf-8")
    records, errors, done = _decode(CSVCodec(), src, stop_on_error=True)
    assert [r for _, r in records] == [{"id": "1"}]
    assert len(errors) == 1
    assert not done


def test_csv_header_with_bom_and_tsv_delimiter(tmp_path: Path):
    src = tmp_path / "a.tsv"
    src.write_bytes("\ufeffid\tname\n1\tann\n".encode("utf-8"))
    codec = CSVCodec()
    assert codec.read_header(src) == ["id", "name"]
    records, _, _ = _decode(codec, src)
    assert records == [(0, {"id": "1", "name": "ann"})]


def test_csv_read_header_of_empty_file_fails(tmp_path: Path):
    src = tmp_path / "empty.csv"
    src.write_text("", encoding="utf-8")
    with pytest.raises(ReadError):
        CSVCodec().read_header(src)


def test_csv_encoder_publishes_only_on_finish(tmp_path: Path):
    out = tmp_path / "out.csv"
    enc = CSVCodec().open_encoder(out, ["id", "name"])
    enc.encode([{"id": 1, "name": "ann", "ignored": True}])
    assert not out.exists()
    enc.finish()
    enc.finish()
    assert out.read_text(encoding="utf-8").splitlines() == ["id,name", "1,ann"]
    assert not (tmp_path / "out.csv.tmp").exists()
    with pytest.raises(RuntimeError):
        enc.encode([{"id": 2}])


def test_gzipped_csv_output_is_compressed(tmp_path: Path):
    out = tmp_path / "out.csv.gz"
    enc = CSVCodec().open_encoder(out, ["id"])
    enc.encode([{"id": "x"}])
    enc.finish()
    with gzip.open(out, "rt", encoding="utf-8") as fp:
        assert fp.read().splitlines() == ["id", "x"]
    records, _, _ = _decode(CSVCodec(), out)
    assert records == [(0, {"id": "x"})]


def test_jsonl_decode_reports_bad_lines(tmp_path: Path):
    src = tmp_path / "a.jsonl"
    src.write_text('{"id": 1}\n\nnot json\n[1, 2]\nnull\n{"id": 2}\n', encoding="utf-8")
    codec = JSONLCodec()
    assert codec.read_header(src) == ["id"]
    records, errors, done = _decode(codec, src)
    assert done
    assert records == [(0, {"id": 1}), (3, None), (4, {"id": 2})]
    assert [e.row_index for e in errors] == [1, 2]


def test_jsonl_encoder_projects_columns_and_stringifies_dates(tmp_path: Path):
    out = tmp_path / "nested" / "out.jsonl"
    with JSONLEncoder(out, ["id", "day"]) as enc:
        enc.encode([{"id": 1, "day": dt.date(2024, 1, 2), "extra": "x"}])
    lines = out.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line) for line in lines] == [{"id": 1, "day": "2024-01-02"}]


def test_parquet_encoder_and_codec(tmp_path: Path):
    out = tmp_path / "out.parquet"
    codec = ParquetCodec(read_batch_size=2)
    enc = codec.open_encoder(out, ["id", "pts", "note"])
    enc.encode([{"id": "a", "pts": 1, "note": None}, {"id": "b", "pts": 2, "note": None}])
    enc.encode([{"id": "c", "pts": 3, "note": "hi"}])
    enc.finish()
    table = pq.read_table(out)
    assert table.column_names == ["id", "pts", "note"]
    assert table.num_rows == 3
    assert codec.read_header(out) == ["id", "pts", "note"]
    records, errors, done = _decode(codec, out)
    assert done and not errors
    assert [r["id"] for _, r in records] == ["a", "b", "c"]
    assert records[2][1]["note"] == "hi"


def test_empty_parquet_output_keeps_columns(tmp_path: Path):
    out = tmp_path / "empty.parquet"
    enc = ParquetCodec().open_encoder(out, ["id", "pts"])
    enc.finish()
    table = pq.read_table(out)
    assert table.column_names == ["id", "pts"]
    assert table.num_rows == 0


def test_xlsx_encoder_and_codec(tmp_path: Path):
    out = tmp_path / "out.xlsx"
    codec = XLSXCodec()
    enc = codec.open_encoder(out, ["id", "pts"], sheet_name="Merged")
    enc.encode([{"id": "a", "pts": 1}, {"id": "b", "pts": None}])
    enc.finish()
    wb = openpyxl.load_workbook(out)
    assert wb.sheetnames == ["Merged"]
    assert codec.read_header(out) == ["id", "pts"]
    records, _, done = _decode(codec, out)
    assert done
    assert records == [(0, {"id": "a", "pts": 1}), (1, {"id": "b", "pts": None})]


def test_xlsx_blank_header_cells_and_named_sheet(tmp_path: Path):
    src = tmp_path / "in.xlsx"
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "First"
    ws.append(["x"])
    data = wb.create_sheet("Data")
    data.append(["id", None, "pts"])
    data.append([1, "mid", 3])
    wb.save(src)

    codec = XLSXCodec(sheet_name="Data")
    assert codec.read_header(src) == ["id", "column_2", "pts"]
    records, _, _ = _decode(codec, src)
    assert records == [(0, {"id": 1, "column_2": "mid", "pts": 3})]
    with pytest.raises(ReadError):
        XLSXCodec(sheet_name="Missing").read_header(src)


def test_xlsx_cells_beyond_header_are_decode_errors(tmp_path: Path):
    src = tmp_path / "wide.xlsx"
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.append(["id", "pts"])
    ws.append([1, 2, "stray"])
    ws.append([3, 4])
    wb.save(src)

    records, errors, done = _decode(XLSXCodec(), src)
    assert done
    assert records == [(1, {"id": 3, "pts": 4})]
    assert len(errors) == 1
    assert isinstance(errors[0], RowDecodeError)
    assert errors[0].row_index == 0
    assert errors[0].raw == [1, 2, "stray"]
