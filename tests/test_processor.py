import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from tabmerge.core.errors import JobAborted, Phase, ProcessError
from tabmerge.core.governor import ErrorGovernor
from tabmerge.core.processor import BatchProcessor, UniqueKeyMap
from tabmerge.core.registries import build_merge, key_from_columns

FILE_A = [
    {"id": "P1", "pts": 5},
    {"id": "P2", "pts": -1},
    {"id": "P3", "pts": 3},
    {"id": "P4", "pts": 0},
]
FILE_B = [{"id": "P1", "pts": 9}, {"id": "P5", "pts": 2}]


def _higher_points(existing, incoming):
    return incoming if incoming["pts"] > existing["pts"] else existing


def _processor(gov=None, **kw):
    return BatchProcessor(governor=gov or ErrorGovernor(log_errors=False), **kw)


def _by_id(rows):
    return {r["id"]: r["pts"] for r in rows}


def test_filter_then_merge_across_files():
    proc = _processor(
        filter=lambda r: r["pts"] > 0,
        key_extractor=lambda r: r["id"],
        merge_function=_higher_points,
        deduplicate=True,
    )
    out = proc.process(FILE_A + FILE_B)
    assert _by_id(out) == {"P1": 9, "P3": 3, "P5": 2}
    assert proc.stats.filtered_out == 2
    assert proc.stats.merges == 1


def test_streaming_fold_matches_whole_set_dedup():
    proc = _processor(
        filter=lambda r: r["pts"] > 0,
        key_extractor=lambda r: r["id"],
        merge_function=_higher_points,
        deduplicate=True,
    )
    key_map = UniqueKeyMap()
    for batch in (FILE_A[:2], FILE_A[2:], FILE_B):
        proc.fold(proc.filter(batch), key_map)
    assert _by_id(key_map.drain()) == {"P1": 9, "P3": 3, "P5": 2}
    assert len(key_map) == 0


def test_filter_preserves_order_and_conserves_rows():
    rows = [{"id": str(i), "pts": i % 3} for i in range(30)]
    proc = _processor(filter=lambda r: r["pts"] == 1)
    kept = proc.filter(rows)
    assert [r["id"] for r in kept] == [str(i) for i in range(30) if i % 3 == 1]
    assert proc.stats.filtered_in + proc.stats.filtered_out == len(rows)


def test_no_filter_passes_everything_through():
    proc = _processor()
    assert proc.process(FILE_A) == FILE_A


def test_dedup_is_idempotent_and_keys_unique():
    rows = [{"id": f"k{i % 7}", "pts": i} for i in range(50)]
    proc = _processor(key_extractor=lambda r: r["id"], deduplicate=True)
    once = proc.deduplicate(rows)
    twice = proc.deduplicate(once)
    assert sorted(r["id"] for r in once) == sorted({r["id"] for r in rows})
    assert sorted(map(repr, twice)) == sorted(map(repr, once))


def test_first_seen_wins_without_merge_function():
    proc = _processor(key_extractor=lambda r: r["id"], deduplicate=True)
    out = proc.deduplicate(FILE_A + FILE_B)
    assert _by_id(out)["P1"] == 5


def test_null_keys_are_dropped_and_counted():
    rows = [{"id": "a", "pts": 1}, {"id": "", "pts": 2}, {"id": None, "pts": 3}]
    proc = _processor(key_extractor=key_from_columns(["id"]), deduplicate=True)
    out = proc.deduplicate(rows)
    assert [r["id"] for r in out] == ["a"]
    assert proc.stats.null_keys == 2


def test_key_extractor_failure_drops_record_and_records_error():
    gov = ErrorGovernor(log_errors=False)

    def key(record):
        return record["missing"] if record["id"] == "P3" else record["id"]

    proc = _processor(gov, key_extractor=key, deduplicate=True)
    out = proc.deduplicate(FILE_A)
    assert "P3" not in _by_id(out)
    assert gov.errors()[0].detail == "key"
    assert proc.stats.key_errors == 1


def test_unhashable_key_is_a_key_error():
    gov = ErrorGovernor(log_errors=False)
    proc = _processor(gov, key_extractor=lambda r: [r["id"]], deduplicate=True)
    assert proc.deduplicate(FILE_B) == []
    assert gov.error_count() == 2


def test_merge_failure_keeps_existing_record():
    gov = ErrorGovernor(log_errors=False)

    def broken(existing, incoming):
        raise RuntimeError("cannot merge")

    proc = _processor(gov, key_extractor=lambda r: r["id"], merge_function=broken, deduplicate=True)
    out = proc.deduplicate(FILE_A + FILE_B)
    assert _by_id(out)["P1"] == 5
    err = gov.errors()[0]
    assert err.phase == Phase.PROCESS
    assert err.detail == "merge"
    assert err.record == {"id": "P1", "pts": 9}


def test_merge_returning_none_is_a_merge_error():
    gov = ErrorGovernor(log_errors=False)
    proc = _processor(gov, key_extractor=lambda r: r["id"], merge_function=lambda a, b: None, deduplicate=True)
    out = proc.deduplicate(FILE_A + FILE_B)
    assert _by_id(out)["P1"] == 5
    assert proc.stats.merge_errors == 1


@pytest.mark.parametrize("skip_invalid, expected", [(True, ["P1", "P3"]), (False, ["P1", "P2", "P3"])])
def test_filter_exception_follows_skip_invalid_data(skip_invalid, expected):
    gov = ErrorGovernor(log_errors=False)

    def predicate(record):
        if record["id"] == "P2":
            raise ValueError("bad value")
        return record["pts"] > 0

    proc = _processor(gov, filter=predicate, skip_invalid_data=skip_invalid)
    assert [r["id"] for r in proc.filter(FILE_A)] == expected
    assert gov.errors()[0].detail == "filter"


def test_stop_verdict_aborts_processing():
    gov = ErrorGovernor(fail_fast=True, log_errors=False)

    def predicate(record):
        raise ValueError("always")

    proc = _processor(gov, filter=predicate)
    with pytest.raises(JobAborted) as excinfo:
        proc.filter(FILE_A)
    assert gov.error_count() == 1
    cause = excinfo.value.__cause__
    assert isinstance(cause, ProcessError)
    assert str(cause).startswith("filter failed")
    assert isinstance(cause.__cause__, ValueError)


def test_failing_merge_under_fail_fast_aborts_with_process_error():
    gov = ErrorGovernor(fail_fast=True, log_errors=False)

    def broken_merge(existing, incoming):
        raise KeyError("pts")

    proc = _processor(gov, key_extractor=lambda r: r["id"], merge_function=broken_merge, deduplicate=True)
    with pytest.raises(JobAborted) as excinfo:
        proc.process(FILE_A + FILE_B)
    assert isinstance(excinfo.value.__cause__, ProcessError)
    assert excinfo.value.error.detail == "merge"


def test_large_inputs_are_chunked_with_progress():
    events = []
    rows = [{"id": f"k{i % 100}", "pts": i} for i in range(1000)]
    proc = _processor(
        filter=lambda r: r["pts"] % 2 == 0,
        key_extractor=lambda r: r["id"],
        merge_function=build_merge("max:pts"),
        deduplicate=True,
        chunk_size=250,
        progress=lambda cur, total, phase, msg=None: events.append((phase, cur, total)),
    )
    out = proc.process(rows)
    assert len(out) == 50
    assert all(r["pts"] >= 900 for r in out)
    assert [e for e in events if e[0] == "filter"][-1] == ("filter", 1000, 1000)
    assert [e for e in events if e[0] == "dedup"][-1] == ("dedup", 500, 500)


def test_parallel_key_extraction_matches_serial():
    rows = [{"id": f"k{i % 1000}", "pts": i} for i in range(25_000)]
    with ThreadPoolExecutor(max_workers=4) as ex:
        proc = _processor(key_extractor=lambda r: r["id"], deduplicate=True, executor=ex)
        out = proc.deduplicate(rows)
    assert len(out) == 1000
    assert _by_id(out)["k0"] == 0


def test_concurrent_folds_keep_one_record_per_key():
    key_map = UniqueKeyMap()
    proc = _processor(key_extractor=lambda r: r["id"], merge_function=build_merge("sum:pts"), deduplicate=True)

    def worker(offset):
        proc.fold([{"id": f"k{i % 10}", "pts": 1} for i in range(offset, offset + 100)], key_map)

    threads = [threading.Thread(target=worker, args=(n * 100,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    out = key_map.drain()
    assert len(out) == 10
    assert sum(r["pts"] for r in out) == 400


def test_dedup_requires_key_extractor():
    with pytest.raises(ValueError):
        _processor(deduplicate=True)
