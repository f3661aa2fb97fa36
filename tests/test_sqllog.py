import logging
import time
from datetime import timedelta

from gpupool.sqllog import LogLevel, SqlLogger
from gpupool.types import NotFoundError

NAME = "gpupool.test.sql"


class _Collector(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)


def logged(level, action, **kwargs):
    """Run action against a fresh SqlLogger and return (level, message) pairs it emitted."""
    log = logging.getLogger(NAME)
    log.setLevel(logging.DEBUG)
    log.propagate = False
    handler = _Collector()
    log.addHandler(handler)
    try:
        action(SqlLogger(log_level=level, logger=log, **kwargs))
    finally:
        log.removeHandler(handler)
    return [(r.levelno, r.getMessage()) for r in handler.records]


def test_info_only_at_info_level():
    assert logged(LogLevel.WARN, lambda sl: sl.info("hello %s", "a")) == []
    assert logged(LogLevel.INFO, lambda sl: sl.info("hello %s", "b")) == [
        (logging.INFO, "hello b")
    ]


def test_warn_and_error_levels():
    assert logged(LogLevel.ERROR, lambda sl: sl.warn("w")) == []
    assert logged(LogLevel.ERROR, lambda sl: sl.error("e")) == [(logging.ERROR, "e")]
    assert logged(LogLevel.SILENT, lambda sl: sl.error("hidden")) == []


def test_trace_error_logged_with_sql():
    entries = logged(
        LogLevel.WARN,
        lambda sl: sl.trace(time.perf_counter(), lambda: ("SELECT 1", -1), RuntimeError("boom")),
    )
    assert entries[0] == (logging.ERROR, "boom - SELECT 1")


def test_trace_not_found_ignored_when_asked():
    entries = logged(
        LogLevel.WARN,
        lambda sl: sl.trace(time.perf_counter(), lambda: ("SELECT 1", 0), NotFoundError()),
        ignore_record_not_found_error=True,
    )
    assert entries == []


def test_trace_silent_never_calls_fc():
    calls = []

    def fc():
        calls.append(True)
        return ("SELECT 1", 0)

    entries = logged(
        LogLevel.SILENT,
        lambda sl: sl.trace(time.perf_counter(), fc, RuntimeError("x")),
    )
    assert entries == []
    assert calls == []


def test_trace_slow_query_warns():
    entries = logged(
        LogLevel.WARN,
        lambda sl: sl.trace(time.perf_counter() - 1.0, lambda: ("SELECT 2", 3), None),
        slow_threshold=timedelta(milliseconds=1),
    )
    level, message = entries[0]
    assert level == logging.WARNING
    assert "SLOW SQL" in message and message.endswith("3 SELECT 2")


def test_trace_info_reports_every_statement():
    info_entries = logged(
        LogLevel.INFO,
        lambda sl: sl.trace(time.perf_counter(), lambda: ("SELECT 3", 5), None),
    )
    warn_entries = logged(
        LogLevel.WARN,
        lambda sl: sl.trace(time.perf_counter(), lambda: ("SELECT 4", 5), None),
    )
    assert len(info_entries) == 1 and info_entries[0][1].endswith("5 SELECT 3")
    assert warn_entries == []