"""Logging of SQL statements issued by the relational storage back end."""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta

from gpupool.types import NotFoundError


class LogLevel(enum.IntEnum):
    """How much the SQL logger reports."""

    SILENT = 1
    ERROR = 2
    WARN = 3
    INFO = 4


@dataclass
class SqlLogger:
    """Feeds statement traces and driver messages into a standard logger."""

    log_level: LogLevel = LogLevel.WARN
    slow_threshold: timedelta | float = 0.0
    ignore_record_not_found_error: bool = False
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("gpupool.sql"))

    def __post_init__(self) -> None:
        if isinstance(self.slow_threshold, timedelta):
            self.slow_threshold = self.slow_threshold.total_seconds()
        self.slow_threshold = float(self.slow_threshold)

    def info(self, message: str, *args: object) -> None:
        """Log an informational message when the level allows it."""
        if self.log_level >= LogLevel.INFO:
            self.logger.info(message, *args)

    def warn(self, message: str, *args: object) -> None:
        """Log a warning when the level allows it."""
        if self.log_level >= LogLevel.WARN:
            self.logger.warning(message, *args)

    def error(self, message: str, *args: object) -> None:
        """Log an error when the level allows it."""
        if self.log_level >= LogLevel.ERROR:
            self.logger.error(message, *args)

    def trace(
        self,
        begin: float,
        fc: Callable[[], tuple[str, int]],
        err: BaseException | None,
    ) -> None:
        """Report one statement started at ``begin`` (a perf_counter value).

        ``fc`` returns the statement text and the affected row count, or -1
        when the count is not known.
        """
        if self.log_level <= LogLevel.SILENT:
            return

        elapsed = time.perf_counter() - begin
        millis = elapsed * 1000.0
        if err is not None and (
            not isinstance(err, NotFoundError) or not self.ignore_record_not_found_error
        ):
            sql, rows = fc()
            self.logger.error("%s %s %s", err, "-" if rows == -1 else rows, sql)
        elif (
            self.slow_threshold != 0
            and elapsed > self.slow_threshold
            and self.log_level >= LogLevel.WARN
        ):
            sql, rows = fc()
            slow = f"SLOW SQL >= {self.slow_threshold}s"
            if rows == -1:
                self.logger.warning("%s %f %s", slow, millis, sql)
            else:
                self.logger.warning("%s %f %d %s", slow, millis, rows, sql)
        elif self.log_level == LogLevel.INFO:
            sql, rows = fc()
            if rows == -1:
                self.logger.info("%f %s", millis, sql)
            else:
                self.logger.info("%f %d %s", millis, rows, sql)