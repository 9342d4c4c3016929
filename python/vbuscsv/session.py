"""One decode session: a single recording file in, delimited tables out."""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from .assembler import CycleBoundary, Record, RecordAssembler, Schema
from .framing import Frame, FrameSynchronizer
from .specification import SpecificationTable
from .writer import TableFormat, TableWriter, TextSink

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

SinkFactory = Callable[[Schema], TextSink]


@dataclass
class DecodeConfig:
    start: datetime = EPOCH
    interval: timedelta = timedelta(seconds=60)
    boundary: CycleBoundary | None = None
    late_fields: str = "error"
    ts_min: datetime | None = None
    ts_max: datetime | None = None


@dataclass
class DecodeSummary:
    frames_seen: int = 0
    frames_rejected: int = 0
    frames_unrecognized: int = 0
    records_emitted: int = 0
    bytes_skipped: int = 0
    cycles_split: int = 0
    truncated: bool = False
    rejected: dict[str, int] = field(default_factory=dict)
    schemas: dict[tuple[int, int], Schema] = field(default_factory=dict)


class MemorySinks:
    """Sink factory collecting each device pair's table in a StringIO."""

    def __init__(self):
        self.buffers: dict[tuple[int, int], io.StringIO] = {}

    def __call__(self, schema: Schema) -> io.StringIO:
        return self.buffers.setdefault(schema.pair, io.StringIO())

    def __getitem__(self, pair: tuple[int, int]) -> str:
        return self.buffers[pair].getvalue()


class DecodeSession:
    """Decodes one recording.  Owns all state; nothing is shared.

    Bytes may be fed in chunks with feed(); finish() marks end of input,
    closes open cycles and returns the summary.  Sinks are requested from
    *sink_factory* on the first record of each device pair, so pairs
    without records never create an output.
    """

    def __init__(self, table: SpecificationTable,
                 config: DecodeConfig | None = None,
                 sink_factory: SinkFactory | None = None,
                 fmt: TableFormat | None = None,
                 keep_records: bool = False):
        self.table = table
        self.config = config or DecodeConfig()
        self.fmt = fmt or TableFormat()
        self.keep_records = keep_records
        self.records: list[Record] = []

        self._sink_factory = sink_factory
        self._sync = FrameSynchronizer()
        self._assembler = RecordAssembler(
            self.config.start, self.config.interval,
            boundary=self.config.boundary,
            late_fields=self.config.late_fields,
            ts_min=self.config.ts_min,
            ts_max=self.config.ts_max,
        )
        self._writers: dict[tuple[int, int], TableWriter] = {}
        self._unrecognized: dict[tuple[int, int, int], int] = {}
        self._records_emitted = 0
        self._finished = False

    def feed(self, data: bytes) -> None:
        self._sync.feed(data)
        for frame in self._sync.frames(final=False):
            self._handle(frame)

    def finish(self) -> DecodeSummary:
        if not self._finished:
            self._finished = True
            for frame in self._sync.frames(final=True):
                self._handle(frame)
            for record in self._assembler.flush():
                self._emit(record)
            summary = self.summary()
            logger.info(
                "decoded %d frames (%d rejected, %d unrecognized), "
                "%d records%s", summary.frames_seen, summary.frames_rejected,
                summary.frames_unrecognized, summary.records_emitted,
                ", truncated" if summary.truncated else "")
        return self.summary()

    def decode(self, data: bytes) -> DecodeSummary:
        self.feed(data)
        return self.finish()

    def summary(self) -> DecodeSummary:
        return DecodeSummary(
            frames_seen=self._sync.frames_seen,
            frames_rejected=self._sync.corrupted,
            frames_unrecognized=sum(self._unrecognized.values()),
            records_emitted=self._records_emitted,
            bytes_skipped=self._sync.bytes_skipped,
            cycles_split=self._assembler.cycles_split,
            truncated=self._sync.truncated,
            rejected=dict(self._sync.rejected),
            schemas=self._assembler.schemas(),
        )

    def _handle(self, frame: Frame) -> None:
        resolved = self.table.resolve(frame)
        if not resolved.recognized:
            key = (frame.source_id, frame.destination_id, frame.command_id)
            if key not in self._unrecognized:
                logger.info("unrecognized command 0x%04X from 0x%04X to "
                            "0x%04X, keeping raw payload",
                            frame.command_id, frame.source_id,
                            frame.destination_id)
            self._unrecognized[key] = self._unrecognized.get(key, 0) + 1
        self._assembler.note_rejections(self._sync.corrupted)
        for record in self._assembler.add(resolved):
            self._emit(record)

    def _emit(self, record: Record) -> None:
        self._records_emitted += 1
        if self.keep_records:
            self.records.append(record)
        if self._sink_factory is None:
            return
        writer = self._writers.get(record.pair)
        if writer is None:
            sink = self._sink_factory(record.schema)
            writer = self._writers[record.pair] = TableWriter(
                sink, record.schema, self.fmt)
        writer.write(record)
