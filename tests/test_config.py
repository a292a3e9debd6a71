from pathlib import Path

import pytest

from tabmerge.core.config import (
    ErrorPolicy,
    JobConfig,
    MergeConfig,
    PoolConfig,
    load_config_from_path,
)
from tabmerge.core.schema import RecordSchema

TOML = """
[job]
sources = ["data/a.csv", "data/b.csv"]
target = "out/merged.xlsx"
batch_size = 250
max_concurrent_files = 2

[schema]
columns = ["id", "name", "points"]
types = { points = "int" }

[process]
key_columns = ["id"]
merge = "max:points"
filters = [{ column = "points", op = ">", value = 0 }]

[pool]
core_size = 1
max_size = 2

[errors]
continue_on_error = true
max_error_count = 10
export_error_data = true

[memory]
threshold = 0.9
pause_threshold = 0.95

[writer]
sheet_name = "Merged"

[logging]
level = "DEBUG"
"""


def _touch(path: Path, text: str = "id\n1\n") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_toml_config_loads_and_resolves_relative_paths(tmp_path: Path):
    cfg_path = tmp_path / "job.toml"
    cfg_path.write_text(TOML, encoding="utf-8")
    cfg = load_config_from_path(cfg_path)
    assert cfg.job.sources == [str(tmp_path / "data/a.csv"), str(tmp_path / "data/b.csv")]
    assert cfg.job.target == str(tmp_path / "out/merged.xlsx")
    assert cfg.job.batch_size == 250
    assert cfg.schema.types == {"points": "int"}
    assert cfg.pool == PoolConfig(core_size=1, max_size=2)
    assert cfg.errors.max_error_count == 10
    assert cfg.memory.pause_threshold == 0.95
    assert cfg.writer.sheet_name == "Merged"
    assert cfg.logging.level == "DEBUG"


def test_declarative_config_resolves_named_functions(tmp_path: Path):
    cfg_path = tmp_path / "job.toml"
    cfg_path.write_text(TOML, encoding="utf-8")
    job = load_config_from_path(cfg_path).to_job_config()
    assert job.deduplicate is True
    assert job.key_extractor({"id": "P1"}) == "P1"
    merged = job.merge_function({"id": "P1", "points": 5}, {"id": "P1", "points": 9})
    assert merged["points"] == 9
    assert job.filter.accept({"points": 3})
    assert not job.filter.accept({"points": 0})
    assert job.schema == RecordSchema(("id", "name", "points"), {"points": "int"})
    assert job.effective_batch_size == 250
    assert job.error_data_path() == tmp_path / "out" / "merged_errors.jsonl"


def test_json_config_round_trip(tmp_path: Path):
    cfg = MergeConfig()
    cfg.job.sources = ["a.csv"]
    cfg.job.target = "out.csv"
    cfg.process.key_columns = ["id"]
    path = tmp_path / "cfg.json"
    cfg.to_json(path)
    loaded = load_config_from_path(path)
    assert loaded.job.sources == [str(tmp_path / "a.csv")]
    assert loaded.process.key_columns == ["id"]
    assert loaded.pool == cfg.pool
    assert loaded.errors == cfg.errors


def test_missing_sections_fall_back_to_defaults(tmp_path: Path):
    path = tmp_path / "tiny.toml"
    path.write_text('[job]\nsources = ["a.csv"]\ntarget = "b.csv"\n', encoding="utf-8")
    cfg = load_config_from_path(path)
    assert cfg.pool == PoolConfig()
    assert cfg.errors == ErrorPolicy()
    assert cfg.process.key_columns == []
    assert cfg.build_schema() is None


def test_unknown_options_and_extensions_are_rejected(tmp_path: Path):
    path = tmp_path / "bad.toml"
    path.write_text("[pool]\ncore_sise = 2\n", encoding="utf-8")
    with pytest.raises(ValueError, match="core_sise"):
        load_config_from_path(path)
    yaml_path = tmp_path / "cfg.yaml"
    yaml_path.write_text("job: {}\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Unsupported config extension"):
        load_config_from_path(yaml_path)


def test_declarative_validation_errors():
    cfg = MergeConfig()
    cfg.process.merge = "keep_last"
    with pytest.raises(ValueError, match="key_columns"):
        cfg.validate()
    cfg = MergeConfig()
    cfg.process.merge = "newest"
    cfg.process.key_columns = ["id"]
    with pytest.raises(ValueError, match="Unknown merge strategy"):
        cfg.validate()
    cfg = MergeConfig()
    cfg.schema.columns = ["id"]
    cfg.schema.types = {"id": "uuid"}
    with pytest.raises(ValueError, match="unknown type"):
        cfg.validate()


def test_job_validation_collects_every_problem(tmp_path: Path):
    job = JobConfig(
        sources=(tmp_path / "missing.csv",),
        target="",
        deduplicate=True,
    )
    problems = job.validation_errors()
    assert f"source file not found: {tmp_path / 'missing.csv'}" in problems
    assert "no output target given" in problems
    assert "no schema (output columns) given" in problems
    assert "deduplication is enabled but no key extractor is set" in problems

    empty = JobConfig()
    assert "no source files given" in empty.validation_errors()


def test_merge_function_without_dedup_is_invalid(tmp_path: Path):
    src = _touch(tmp_path / "a.csv")
    job = JobConfig(
        sources=(src,),
        target=tmp_path / "out.csv",
        schema=RecordSchema(("id",)),
        merge_function=lambda a, b: a,
    )
    assert job.validation_errors() == ["a merge function requires deduplication to be enabled"]


def test_target_must_differ_from_sources(tmp_path: Path):
    src = _touch(tmp_path / "a.csv")
    job = JobConfig.simple([src], src, schema=RecordSchema(("id",)))
    assert any("is also a source file" in p for p in job.validation_errors())


def test_presets_and_defaults(tmp_path: Path):
    src = _touch(tmp_path / "a.csv")
    safe = JobConfig.safe([src], tmp_path / "o.csv.gz")
    assert safe.fail_fast
    assert safe.error_data_path() == tmp_path / "o_errors.jsonl"

    dedup = JobConfig.with_dedup([src], tmp_path / "o.csv", key_extractor=lambda r: r["id"])
    assert dedup.deduplicate and dedup.merge_function is None

    zero = JobConfig(sources=(src,), batch_size=0, max_concurrent_files=0)
    assert zero.effective_batch_size == 5000
    assert zero.effective_max_concurrent_files == 3
    assert zero.with_schema(RecordSchema(("id",))).schema.columns == ("id",)
