import logging
import threading

import pytest

from tabmerge.core.errors import ErrorRecord, Phase
from tabmerge.core.governor import ErrorGovernor


def _read_err(i: int = 0) -> ErrorRecord:
    return ErrorRecord.read_error("a.csv", i, f"bad row {i}")


def test_continue_policy_never_stops_without_limit():
    gov = ErrorGovernor(fail_fast=False, log_errors=False)
    verdicts = [gov.record_error(_read_err(i)) for i in range(20)]
    assert verdicts == [False] * 20
    assert gov.error_count() == 20
    assert not gov.stopped


def test_fail_fast_stops_on_first_error():
    gov = ErrorGovernor(fail_fast=True, log_errors=False)
    assert gov.record_error(_read_err()) is True
    assert gov.stopped
    assert gov.stop_reason == "fail-fast policy"


def test_threshold_stops_exactly_at_limit():
    gov = ErrorGovernor(max_error_count=3, log_errors=False)
    assert gov.record_error(_read_err(0)) is False
    assert gov.record_error(_read_err(1)) is False
    assert gov.record_error(_read_err(2)) is True
    # the verdict is sticky once reached
    assert gov.record_error(_read_err(3)) is True
    assert gov.error_count() == 4


def test_callback_can_request_stop_and_sees_running_count():
    seen = []

    def cb(error, count, phase):
        seen.append((count, phase))
        return count < 2

    gov = ErrorGovernor(error_callback=cb, log_errors=False)
    assert gov.record_error(_read_err(0)) is False
    assert gov.record_error(ErrorRecord.write_error("out.csv", "disk full")) is True
    assert seen == [(1, Phase.READ), (2, Phase.WRITE)]
    assert gov.stop_reason == "error callback requested stop"


def test_callback_exception_is_treated_as_continue():
    def cb(error, count, phase):
        raise RuntimeError("callback broke")

    gov = ErrorGovernor(error_callback=cb, log_errors=False)
    assert gov.record_error(_read_err()) is False
    assert gov.error_count() == 1


def test_counts_by_phase_and_collection_toggle():
    gov = ErrorGovernor(collect_errors=False, log_errors=False)
    gov.record_error(_read_err())
    gov.record_error(ErrorRecord.convert_error("a.csv", 1, "not an int"))
    gov.record_error(ErrorRecord.process_error("merge", "merge failed"))
    assert gov.errors() == []
    assert gov.counts_by_phase() == {"read": 1, "transform": 1, "process": 1, "write": 0}
    assert gov.phase_count(Phase.PROCESS) == 1


def test_concurrent_recording_keeps_exact_count():
    gov = ErrorGovernor(log_errors=False)

    def worker():
        for i in range(200):
            gov.record_error(_read_err(i))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert gov.error_count() == 1600
    assert len(gov.errors()) == 1600


def test_report_lists_phases_and_first_errors():
    gov = ErrorGovernor(job_id="j1", log_errors=False, sample_size=2)
    assert gov.report() == "job j1: no errors"
    for i in range(3):
        gov.record_error(_read_err(i))
    gov.record_error(ErrorRecord.process_error("filter", "filter raised"))
    report = gov.report()
    assert "=== error report (job j1) ===" in report
    assert "total errors: 4" in report
    assert "  read: 3" in report
    assert "  process: 1" in report
    assert "1. [read] source=a.csv row=0 message=bad row 0" in report
    assert "... 2 more errors not shown" in report


def test_logs_warning_when_continuing_and_error_when_stopping(caplog):
    gov = ErrorGovernor(max_error_count=2, job_id="jlog")
    with caplog.at_level(logging.WARNING, logger="tabmerge"):
        gov.record_error(_read_err(0))
        gov.record_error(_read_err(1))
    levels = [r.levelno for r in caplog.records if "jlog" in r.getMessage()]
    assert levels == [logging.WARNING, logging.ERROR]


def test_error_record_helpers():
    err = ErrorRecord.process_error("key", "key extractor failed", record={"id": 1}, cause=KeyError("id"))
    assert err.phase == Phase.PROCESS
    assert err.phase_label == "process:key"
    assert err.short_description() == "[process:key] unknown row=unknown: key extractor failed"
    data = err.to_dict()
    assert data["record"] == {"id": 1}
    assert data["cause"].startswith("KeyError")


def test_phase_normalize_rejects_unknown():
    assert Phase.normalize(" READ ") == "read"
    with pytest.raises(ValueError):
        Phase.normalize("flush")
