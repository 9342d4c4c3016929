"""Delimited text output for assembled records.

Layout of one table:
  timestamp<d>label[unit]<d>label[unit]...
  <time><d><value><d><value>...

Numeric cells carry as many decimals as the field's scale step needs;
missing fields are empty cells.  Rows are written as they arrive, so a
table can be appended to without rewriting earlier rows.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Protocol

from .assembler import Column, Record, Schema
from .errors import SinkWriteFailure

TIMESTAMP_HEADING = "timestamp"


class TextSink(Protocol):
    def write(self, s: str) -> int: ...


@dataclass
class TableFormat:
    delimiter: str = ","
    time_format: str = "%Y-%m-%d %H:%M:%S"
    tz: tzinfo = field(default=timezone.utc)

    def format_time(self, ts: datetime) -> str:
        return ts.astimezone(self.tz).strftime(self.time_format)


def format_cell(column: Column, value: float | str | None) -> str:
    if value is None:
        return ""
    if column.raw:
        return str(value)
    return f"{value:.{column.precision}f}"


class TableWriter:
    """Writes the records of one schema to a text sink."""

    def __init__(self, sink: TextSink, schema: Schema,
                 fmt: TableFormat | None = None, header: bool = True):
        self.schema = schema
        self.fmt = fmt or TableFormat()
        self.rows_written: int = 0
        self._csv = csv.writer(sink, delimiter=self.fmt.delimiter,
                               lineterminator="\n")
        self._header_pending = header

    def write_header(self) -> None:
        self._writerow([TIMESTAMP_HEADING] + self.schema.headings())
        self._header_pending = False

    def write(self, record: Record) -> None:
        if record.schema != self.schema:
            raise ValueError(
                f"record schema for {record.pair} does not match table schema")
        if self._header_pending:
            self.write_header()
        row = [self.fmt.format_time(record.timestamp)]
        row.extend(format_cell(c, v)
                   for c, v in zip(self.schema.columns, record.values))
        self._writerow(row)
        self.rows_written += 1

    def _writerow(self, row: list[str]) -> None:
        try:
            self._csv.writerow(row)
        except OSError as exc:
            raise SinkWriteFailure(f"write to output sink failed: {exc}") from exc
