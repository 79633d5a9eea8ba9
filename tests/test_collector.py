import re

import pandas as pd
import pytest

from vmload.failures import ByteCountMismatch, CreateFailed, DeleteFailed, UnexpectedError
from vmload.lifecycle import LifecycleRun, Outcome
from vmload.ramp.collector import (
    POPULATION_COLUMNS,
    RUN_COLUMNS,
    ResultCollector,
    summarize_durations,
)
from vmload.report import (
    DEFAULT_RUN_LOG_PATH,
    close_run_logger,
    configure_run_logger,
    format_run,
)
from vmload.tunnel import SessionState, TunnelResult


def make_tunnel(name: str, received: int = 64, failure=None) -> TunnelResult:
    return TunnelResult(
        vm_name=name,
        state=SessionState.CLOSED,
        expected_bytes=64,
        bytes_sent=64,
        bytes_received=received,
        close_code=1000,
        sent_digest="a" * 64,
        received_digest="a" * 64 if failure is None else "b" * 64,
        duration_s=0.5,
        failure=failure,
    )


def make_run(name: str, failure=None, tunnel=None, delete_failure=None) -> LifecycleRun:
    run = LifecycleRun(name=name, create_status=200, tunnel=tunnel)
    if failure is not None:
        run.record_failure(failure)
    run.delete_attempted = True
    run.delete_status = 200 if delete_failure is None else delete_failure.status
    if delete_failure is not None:
        run.delete_failure = delete_failure
        run.record_failure(delete_failure)
    run.complete()
    return run


def test_counters_and_reasons():
    collector = ResultCollector()
    for _ in range(3):
        collector.register_start()
    collector.register_start()

    collector.record(make_run("vm-1", tunnel=make_tunnel("vm-1")))
    collector.record(make_run("vm-2", failure=CreateFailed(500)))
    collector.record_failure("slot-1-crash-1", UnexpectedError("RuntimeError('boom')"))

    result = collector.snapshot()
    assert result.started == 4
    assert result.passed == 1
    assert result.failed == 2
    assert result.finished == 3
    assert result.in_flight == 1
    assert result.pass_rate == pytest.approx(1 / 3)
    assert result.failures_by_reason == {"create_failed": 1, "unexpected_error": 1}


def test_empty_snapshot_has_zero_pass_rate():
    result = ResultCollector().snapshot()

    assert result.finished == 0
    assert result.pass_rate == 0.0


def test_run_dataframe():
    collector = ResultCollector()
    mismatch = ByteCountMismatch(expected=64, actual=10)
    collector.record(make_run("vm-ok", tunnel=make_tunnel("vm-ok")))
    collector.record(
        make_run("vm-short", failure=mismatch, tunnel=make_tunnel("vm-short", 10, mismatch))
    )
    collector.record(make_run("vm-create", failure=CreateFailed(503)))

    df = collector.build_dataframe()

    assert list(df.columns) == RUN_COLUMNS
    assert list(df["outcome"]) == ["passed", "failed", "failed"]
    assert list(df["reason"].fillna("")) == ["", "byte_count_mismatch", "create_failed"]
    assert df.loc[1, "detail"] == "expected 64 bytes back, received 10"
    assert df.loc[1, "bytes_received"] == 10
    assert pd.isna(df.loc[2, "close_code"])


def test_records_can_be_disabled():
    collector = ResultCollector(keep_records=False)
    collector.record(make_run("vm-1"))

    assert collector.snapshot().passed == 1
    assert collector.build_dataframe().empty


def test_empty_frames_keep_their_columns():
    collector = ResultCollector()

    assert list(collector.build_dataframe().columns) == RUN_COLUMNS
    assert list(collector.population_dataframe().columns) == POPULATION_COLUMNS


def test_population_dataframe():
    collector = ResultCollector()
    collector.record_population(0.0, 0, 0)
    collector.record_population(1.0, 10, 8)

    df = collector.population_dataframe()

    assert df.to_dict("records") == [
        {"elapsed_s": 0.0, "target": 0, "active": 0},
        {"elapsed_s": 1.0, "target": 10, "active": 8},
    ]


def test_summarize_durations():
    df = pd.DataFrame({"duration_s": [1.0, 2.0, 3.0, 4.0, None]})

    summary = summarize_durations(df)

    assert summary["p50_s"] == pytest.approx(2.5)
    assert summary["max_s"] == 4.0
    assert summary["p95_s"] <= summary["p99_s"] <= summary["max_s"]
    assert summarize_durations(pd.DataFrame(columns=RUN_COLUMNS)) == {}


def test_format_run_for_a_passing_run():
    text = format_run(make_run("vm-ok", tunnel=make_tunnel("vm-ok")))

    assert "vm 'vm-ok'" in text
    assert "outcome: passed" in text
    assert "state=closed close_code=1000 bytes=64/64" in text
    assert "sent_sha256: " + "a" * 64 in text
    assert "received_sha256" not in text
    assert "delete_status: 200" in text
    assert "reason" not in text


def test_format_run_for_a_skipped_tunnel():
    text = format_run(make_run("vm-bad", failure=CreateFailed(500)))

    assert "reason: create_failed" in text
    assert "detail: VM creation failed: HTTP 500" in text
    assert "tunnel: skipped" in text


def test_format_run_keeps_a_secondary_delete_error():
    text = format_run(
        make_run("vm-both", failure=CreateFailed(500), delete_failure=DeleteFailed(404))
    )

    assert "reason: create_failed" in text
    assert "delete_status: 404" in text
    assert "delete_error: VM deletion failed: HTTP 404" in text


def test_run_logger_writes_one_entry_per_run(tmp_path):
    log_path = tmp_path / "logs" / "runs.log"
    logger = configure_run_logger(log_path)
    collector = ResultCollector(run_logger=logger)

    collector.record(make_run("vm-ok", tunnel=make_tunnel("vm-ok")))
    collector.record(make_run("vm-bad", failure=CreateFailed(500)))
    close_run_logger(logger)

    content = log_path.read_text(encoding="utf-8")
    assert re.search(r"^\d{4}-\d\d-\d\dT\d\d:\d\d:\d\dZ INFO    \[", content, re.M)
    assert "Z WARNING [" in content
    assert "vm 'vm-ok'" in content
    assert "vm 'vm-bad'" in content
    assert logger.handlers == []


def test_pending_run_counts_as_failed():
    collector = ResultCollector()
    run = LifecycleRun(name="vm-x")

    assert run.outcome is Outcome.PENDING
    collector.record(run)

    assert collector.snapshot().failures_by_reason == {"unknown": 1}


def test_run_logger_appends_when_asked(tmp_path):
    log_path = tmp_path / "runs.log"
    for name in ("vm-first", "vm-second"):
        logger = configure_run_logger(log_path, append=True)
        ResultCollector(run_logger=logger).record(make_run(name))
        close_run_logger(logger)

    content = log_path.read_text(encoding="utf-8")
    assert "vm 'vm-first'" in content
    assert "vm 'vm-second'" in content


def test_reconfiguring_the_run_logger_truncates_and_releases_the_old_file(tmp_path):
    first = configure_run_logger(tmp_path / "a.log")
    old_handlers = list(first.handlers)
    first.info("stale entry")

    second = configure_run_logger(tmp_path / "a.log")
    second.info("fresh entry")
    close_run_logger(second)

    assert all(handler.stream is None for handler in old_handlers)
    content = (tmp_path / "a.log").read_text(encoding="utf-8")
    assert "stale entry" not in content
    assert "fresh entry" in content


def test_run_logger_defaults_to_the_logs_directory(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    logger = configure_run_logger()
    logger.info("hello")
    close_run_logger(logger)

    assert (tmp_path / DEFAULT_RUN_LOG_PATH).read_text(encoding="utf-8").endswith("hello\n")
