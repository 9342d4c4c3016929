"""numpy time-series extraction from assembled records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timezone
from typing import Iterable

import numpy as np

from .assembler import Record


@dataclass
class ChannelData:
    """Time-series data for one column."""

    timestamps: np.ndarray  # datetime64[s], UTC
    values: np.ndarray  # float64, NaN where the cell is empty


@dataclass
class ColumnStats:
    heading: str
    count: int
    minimum: float
    maximum: float
    mean: float


def _utc_naive(record: Record):
    return record.timestamp.astimezone(timezone.utc).replace(tzinfo=None)


def column_series(records: Iterable[Record], heading: str) -> ChannelData:
    """Collect one numeric column across all records that carry it."""
    times = []
    values = []
    for r in records:
        for col, value in zip(r.schema.columns, r.values):
            if col.heading != heading and col.label != heading:
                continue
            if col.raw:
                raise ValueError(f"{heading!r} is a raw payload column")
            times.append(_utc_naive(r))
            values.append(np.nan if value is None else value)
            break
    return ChannelData(np.array(times, dtype="datetime64[s]"),
                       np.array(values, dtype=np.float64))


def summarize(records: list[Record]) -> list[ColumnStats]:
    """Count / min / max / mean for every numeric column, in schema order."""
    headings: list[str] = []
    for r in records:
        for col in r.schema.columns:
            if not col.raw and col.heading not in headings:
                headings.append(col.heading)

    stats: list[ColumnStats] = []
    for heading in headings:
        values = column_series(records, heading).values
        present = values[~np.isnan(values)]
        if present.size == 0:
            stats.append(ColumnStats(heading, 0, np.nan, np.nan, np.nan))
            continue
        stats.append(ColumnStats(
            heading, int(present.size), float(present.min()),
            float(present.max()), float(present.mean()),
        ))
    return stats
