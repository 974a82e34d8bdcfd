import sqlite3

import pytest

from camtrap_db.exceptions import ErrorKind, OperationCancelled, SchemaMismatch
from camtrap_db.progress import CancellationToken, ProgressEvent, ProgressRun, ProgressThrottle, percent_of
from camtrap_db.results import Result, returns_result


def test_throttle_passes_first_and_final_events():
    times = iter([0.0, 0.1, 0.2, 0.3, 0.35])
    throttle = ProgressThrottle(interval=0.25, clock=lambda: next(times))
    assert [throttle.due(p) for p in (10, 20, 30, 40, 100)] == [True, False, False, True, True]


def test_percent_of():
    assert percent_of(1, 3) == 33
    assert percent_of(0, 0) == 100
    assert percent_of(5, 3) == 100


def test_cancellation_token():
    token = CancellationToken()
    token.raise_if_cancelled()
    token.cancel()
    with pytest.raises(OperationCancelled):
        token.raise_if_cancelled("stop")


def test_progress_run_collects_result():
    def steps():
        yield ProgressEvent(50, "half")
        return Result.success("done")

    run = ProgressRun(steps())
    assert [e.percent for e in run] == [50]
    assert run.result.value == "done"


def test_progress_run_converts_store_errors():
    def steps():
        yield ProgressEvent(10, "start")
        raise SchemaMismatch("fields differ", ["fields differ", "Only in the source: X"])

    result = ProgressRun(steps()).run()
    assert result.error == ErrorKind.SCHEMA_MISMATCH
    assert result.lines == ["fields differ", "Only in the source: X"]


def test_progress_run_converts_database_errors():
    def steps():
        raise sqlite3.DatabaseError("file is not a database")
        yield

    assert ProgressRun(steps()).run().error == ErrorKind.STORE_UNREADABLE


def test_returns_result_wraps_values_and_errors():
    @returns_result
    def works():
        return 3

    @returns_result
    def fails():
        raise OperationCancelled("stopped")

    assert works().ok and works().value == 3
    assert fails().error == ErrorKind.CANCELLED
    assert fails().lines == ["stopped"]


def test_non_fatal_kinds():
    assert not ErrorKind.DUPLICATE_COUNT_MISMATCH.fatal
    assert not ErrorKind.SCHEMA_COSMETIC_DRIFT.fatal
    assert ErrorKind.CSV_VALUE_INVALID.fatal
