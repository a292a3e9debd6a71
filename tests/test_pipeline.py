import csv
import glob
import json
import tempfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import openpyxl
import pyarrow.parquet as pq

from tabmerge.core.config import ErrorPolicy, JobConfig, PoolConfig
from tabmerge.core.errors import Phase
from tabmerge.core.pipeline import JobResult, MergePipeline, Stage, run_merge
from tabmerge.core.registries import build_merge, key_from_columns, parse_filter_expression
from tabmerge.core.schema import RecordSchema

SCHEMA = RecordSchema(("id", "pts"), {"pts": "int"})


def _write_csv(path: Path, rows: list[tuple], header=("id", "pts")) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as fp:
        writer = csv.writer(fp)
        writer.writerow(header)
        writer.writerows(rows)
    return path


def _read_csv(path: Path) -> list[dict]:
    with path.open(encoding="utf-8", newline="") as fp:
        return list(csv.DictReader(fp))


def _example_files(tmp_path: Path) -> list[Path]:
    a = _write_csv(tmp_path / "in" / "a.csv", [("P1", 5), ("P2", -1), ("P3", 3), ("P4", 0)])
    b = _write_csv(tmp_path / "in" / "b.csv", [("P1", 9), ("P5", 2)])
    return [a, b]


def _higher_points(existing, incoming):
    return incoming if incoming["pts"] > existing["pts"] else existing


def test_filter_dedup_merge_end_to_end(tmp_path: Path):
    sources = _example_files(tmp_path)
    target = tmp_path / "out" / "merged.csv"
    job = JobConfig.with_dedup(
        sources,
        target,
        key_extractor=lambda r: r["id"],
        merge_function=_higher_points,
        schema=SCHEMA,
        filter=lambda r: r["pts"] > 0,
        batch_size=2,
    )
    result = run_merge(job)
    assert result.success, result.error_message
    assert result.total_rows == 3
    assert result.output_path == target
    rows = {r["id"]: r["pts"] for r in _read_csv(target)}
    assert rows == {"P1": "9", "P3": "3", "P5": "2"}
    assert result.error_count == 0
    assert result.stats["process"]["filtered_out"] == 2
    assert result.stats["process"]["merges"] == 1
    assert result.stats["read"]["files_completed"] == 2


def test_plain_merge_keeps_every_row(tmp_path: Path):
    sources = [
        _write_csv(tmp_path / f"f{i}.csv", [(f"r{i}-{j}", j) for j in range(40)]) for i in range(5)
    ]
    target = tmp_path / "all.csv"
    job = JobConfig.simple(sources, target, schema=SCHEMA, batch_size=7, max_concurrent_files=2)
    result = MergePipeline(job).run()
    assert result.success
    assert result.total_rows == 200
    ids = [r["id"] for r in _read_csv(target)]
    assert sorted(ids) == sorted(f"r{i}-{j}" for i in range(5) for j in range(40))
    assert result.stats["read"]["peak_open_files"] <= 2


def test_validation_failure_touches_nothing(tmp_path: Path):
    target = tmp_path / "out" / "merged.txt"
    job = JobConfig(sources=(tmp_path / "nope.csv",), target=target, deduplicate=True)
    result = MergePipeline(job).run()
    assert isinstance(result, JobResult)
    assert not result.success
    assert result.stage == Stage.VALIDATE
    assert "no codec for output target 'merged.txt'" in result.validation_errors
    assert any(p.startswith("source file not found") for p in result.validation_errors)
    assert result.error_message.startswith("invalid job configuration")
    assert not target.parent.exists()


def test_error_threshold_fails_job_without_output(tmp_path: Path):
    src = _write_csv(tmp_path / "bad.csv", [("a", "x"), ("b", "y"), ("c", "z"), ("d", 4)])
    target = tmp_path / "out.csv"
    job = JobConfig.simple([src], target, schema=SCHEMA, errors=ErrorPolicy(max_error_count=2, log_errors=False))
    result = run_merge(job)
    assert not result.success
    assert result.stage == Stage.ABORTED
    assert result.error_count == 2
    assert "stopped: error limit reached (2)" in result.error_report
    assert not target.exists()


def test_invalid_rows_are_skipped_and_exported(tmp_path: Path):
    src = _write_csv(tmp_path / "mixed.csv", [("a", 1), ("b", "oops"), ("c", 3), ("d", "4.5")])
    target = tmp_path / "out" / "clean.csv"
    job = JobConfig.simple(
        [src],
        target,
        schema=SCHEMA,
        errors=ErrorPolicy(export_error_data=True, log_errors=False),
    )
    result = run_merge(job)
    assert result.success
    assert result.has_errors
    assert result.total_rows == 2
    assert [r["id"] for r in _read_csv(target)] == ["a", "c"]
    assert result.error_data_path == tmp_path / "out" / "clean_errors.jsonl"
    exported = [json.loads(line) for line in result.error_data_path.read_text(encoding="utf-8").splitlines()]
    assert [e["row_index"] for e in exported] == [1, 3]
    assert {e["phase"] for e in exported} == {Phase.TRANSFORM}
    assert exported[0]["record"] == {"id": "b", "pts": "oops"}


def test_scratch_directory_is_removed(tmp_path: Path):
    sources = _example_files(tmp_path)
    pipeline = MergePipeline(JobConfig.simple(sources, tmp_path / "o.csv", schema=SCHEMA), job_id="scratch01")
    result = pipeline.run()
    assert result.success
    assert pipeline.scratch_dir is not None
    assert not pipeline.scratch_dir.exists()
    assert glob.glob(str(Path(tempfile.gettempdir()) / "tabmerge_scratch01_*")) == []


def test_progress_milestones(tmp_path: Path):
    events = []
    sources = _example_files(tmp_path)
    job = JobConfig.simple(
        sources,
        tmp_path / "o.csv",
        schema=SCHEMA,
        progress_callback=lambda cur, total, phase, msg=None: events.append((cur, total, phase)),
    )
    assert run_merge(job).success
    milestones = [(cur, phase) for cur, total, phase in events if total == 100]
    assert milestones == [(0, "init"), (30, "read"), (60, "process"), (100, "done")]
    assert [cur for cur, total, phase in events if total == 2 and phase == "read"] == [1, 2]


def test_mixed_inputs_to_xlsx(tmp_path: Path):
    csv_src = _write_csv(tmp_path / "a.csv", [("P1", 5), ("P2", 7)])
    jsonl_src = tmp_path / "b.jsonl"
    jsonl_src.write_text('{"id": "P3", "pts": 1, "extra": true}\n{"id": "P1", "pts": 8}\n', encoding="utf-8")
    target = tmp_path / "merged.xlsx"
    job = JobConfig.with_dedup(
        [csv_src, jsonl_src],
        target,
        key_extractor=key_from_columns(["id"]),
        merge_function=build_merge("max:pts"),
        schema=SCHEMA,
        max_concurrent_files=1,
    )
    result = run_merge(job)
    assert result.success, result.error_message
    ws = openpyxl.load_workbook(target).active
    rows = list(ws.iter_rows(values_only=True))
    assert rows[0] == ("id", "pts")
    assert {r[0]: r[1] for r in rows[1:]} == {"P1": 8, "P2": 7, "P3": 1}


def test_parquet_output_with_filter_condition(tmp_path: Path):
    sources = _example_files(tmp_path)
    target = tmp_path / "merged.parquet"
    job = JobConfig.simple(sources, target, schema=SCHEMA, filter=parse_filter_expression("pts >= 3"))
    result = run_merge(job)
    assert result.success
    table = pq.read_table(target)
    assert sorted(table.column("id").to_pylist()) == ["P1", "P1", "P3"]


def test_unreadable_file_continue_and_fail_fast(tmp_path: Path):
    good = _write_csv(tmp_path / "good.csv", [("P1", 1)])
    broken = tmp_path / "broken.parquet"
    broken.write_bytes(b"this is not parquet")

    ok = run_merge(JobConfig.simple([good, broken], tmp_path / "o1.csv", schema=SCHEMA))
    assert ok.success
    assert ok.total_rows == 1
    assert ok.stats["read"]["files_failed"] == 1
    assert ok.errors[0].source == str(broken)

    strict = JobConfig.simple(
        [good, broken],
        tmp_path / "o2.csv",
        schema=SCHEMA,
        errors=ErrorPolicy(continue_on_error=False, log_errors=False),
    )
    failed = run_merge(strict)
    assert not failed.success
    assert not (tmp_path / "o2.csv").exists()


def test_error_callback_can_stop_the_job(tmp_path: Path):
    src = _write_csv(tmp_path / "a.csv", [("a", "x"), ("b", 2)])
    calls = []

    def on_error(error, count, phase):
        calls.append(phase)
        return False

    job = JobConfig.simple([src], tmp_path / "o.csv", schema=SCHEMA, error_callback=on_error)
    result = run_merge(job)
    assert not result.success
    assert calls == [Phase.TRANSFORM]


def test_external_executor_survives_the_job(tmp_path: Path):
    sources = _example_files(tmp_path)
    with ThreadPoolExecutor(max_workers=2) as ex:
        job = JobConfig.simple(sources, tmp_path / "o.csv", schema=SCHEMA, executor=ex)
        result = run_merge(job)
        assert result.success
        assert ex.submit(lambda: "still running").result(timeout=5) == "still running"
    assert "pool" not in result.stats


def test_owned_pool_and_summary_dict(tmp_path: Path):
    sources = _example_files(tmp_path)
    job = JobConfig.simple(sources, tmp_path / "o.csv", schema=SCHEMA, pool=PoolConfig(core_size=1, max_size=1))
    result = run_merge(job)
    data = result.to_dict()
    assert data["success"] is True
    assert data["total_rows"] == 6
    assert data["stats"]["pool"]["core_size"] == 1
    assert data["output_path"] == str(tmp_path / "o.csv")
    json.dumps(data)
