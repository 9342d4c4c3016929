"""Group resolved frames into per-device-pair records with frozen schemas."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol

from .errors import SchemaFrozenError
from .specification import ResolvedFrame

logger = logging.getLogger(__name__)

LATE_FIELD_POLICIES = ("error", "drop")


@dataclass(frozen=True)
class Column:
    command_id: int
    label: str
    unit_label: str = ""
    precision: int = 0
    raw: bool = False  # hex dump of an unrecognized payload

    @property
    def key(self) -> tuple[int, str]:
        return self.command_id, self.label

    @property
    def heading(self) -> str:
        if self.unit_label:
            return f"{self.label}[{self.unit_label}]"
        return self.label


@dataclass(frozen=True)
class Schema:
    """Frozen column order for one (source, destination) device pair."""

    pair: tuple[int, int]
    columns: tuple[Column, ...]

    def headings(self) -> list[str]:
        return [c.heading for c in self.columns]

    def index(self) -> dict[tuple[int, str], int]:
        return {c.key: i for i, c in enumerate(self.columns)}


@dataclass
class Record:
    schema: Schema
    timestamp: datetime
    cycle: int
    values: list[float | str | None]
    raw_payloads: dict[int, bytes] = field(default_factory=dict)

    @property
    def pair(self) -> tuple[int, int]:
        return self.schema.pair


# ---------------------------------------------------------------------------
# Cycle boundary rules
# ---------------------------------------------------------------------------

class CycleBoundary(Protocol):
    """Decides where sampling cycles start and which ones are whole."""

    def starts_new_cycle(self, pending: list[int], command_id: int) -> bool: ...

    def is_complete(self, commands: list[int]) -> bool: ...


class RepeatedCommandBoundary:
    """A cycle ends when a command already in it arrives again."""

    def starts_new_cycle(self, pending: list[int], command_id: int) -> bool:
        return command_id in pending

    def is_complete(self, commands: list[int]) -> bool:
        return True


class LeadCommandBoundary:
    """Every occurrence of one designated command opens a new cycle.

    Frames seen before the first lead command belong to a cycle whose
    start was cut off, so such a cycle is not complete.
    """

    def __init__(self, command_id: int):
        self.command_id = command_id

    def starts_new_cycle(self, pending: list[int], command_id: int) -> bool:
        return bool(pending) and command_id == self.command_id

    def is_complete(self, commands: list[int]) -> bool:
        return bool(commands) and commands[0] == self.command_id


class FrameBoundary:
    """Each frame is a cycle of its own."""

    def starts_new_cycle(self, pending: list[int], command_id: int) -> bool:
        return bool(pending)

    def is_complete(self, commands: list[int]) -> bool:
        return True


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------

class Phase(enum.Enum):
    DISCOVERING = "discovering"
    FROZEN = "frozen"


@dataclass
class _Cycle:
    number: int
    columns: dict[tuple[int, str], Column]
    cells: dict[tuple[int, str], float | str]
    raw_payloads: dict[int, bytes]
    trusted: bool


@dataclass
class _PairState:
    phase: Phase = Phase.DISCOVERING
    schema: Schema | None = None
    cycle: int = 0
    pending: list[ResolvedFrame] = field(default_factory=list)
    # Rejection total when the pending cycle opened
    opened_at: int = 0
    # Cycles held back while discovering
    held: list[_Cycle] = field(default_factory=list)


class RecordAssembler:
    """Turns a stream of resolved frames into timestamped records.

    The first complete cycle of a device pair that saw no rejected frames
    fixes its column order.  Cycles before it are held back and emitted
    against that schema once it is frozen, so no column is ever added after
    a row was written.  Every later record of the pair uses the same schema,
    with None for fields absent from the cycle.

    Recognized commands contribute every field their packet layout
    describes, whether or not the payload was long enough to carry it.
    """

    def __init__(self, start: datetime, interval: timedelta,
                 boundary: CycleBoundary | None = None,
                 late_fields: str = "error",
                 ts_min: datetime | None = None,
                 ts_max: datetime | None = None):
        if late_fields not in LATE_FIELD_POLICIES:
            raise ValueError(f"late_fields must be one of {LATE_FIELD_POLICIES}")
        self.start = start
        self.interval = interval
        self.boundary = boundary if boundary is not None else RepeatedCommandBoundary()
        self.late_fields = late_fields
        self.ts_min = ts_min
        self.ts_max = ts_max
        self.cycles_split = 0
        self._rejections = 0
        self._pairs: dict[tuple[int, int], _PairState] = {}

    def phase(self, pair: tuple[int, int]) -> Phase | None:
        state = self._pairs.get(pair)
        return state.phase if state else None

    def schemas(self) -> dict[tuple[int, int], Schema]:
        return {pair: s.schema for pair, s in self._pairs.items()
                if s.schema is not None}

    def note_rejections(self, total: int) -> None:
        """Record the running count of frames rejected upstream.

        A discovery cycle open while this count grew may be missing a
        command, so it does not freeze the schema.
        """
        self._rejections = total

    def add(self, resolved: ResolvedFrame) -> list[Record]:
        """Add one frame; return the records of a cycle it closed, if any."""
        pair = resolved.frame.pair
        command = resolved.frame.command_id
        state = self._pairs.setdefault(pair, _PairState())
        out: list[Record] = []
        if state.pending:
            commands = [rf.frame.command_id for rf in state.pending]
            if self.boundary.starts_new_cycle(commands, command):
                out.extend(self._close(pair, state))
            elif command in commands:
                logger.warning("0x%04X->0x%04X: command 0x%04X repeated "
                               "within one cycle, starting a new cycle",
                               pair[0], pair[1], command)
                self.cycles_split += 1
                out.extend(self._close(pair, state))
        state.pending.append(resolved)
        return out

    def flush(self) -> list[Record]:
        """Close every open cycle (end of file)."""
        out: list[Record] = []
        for pair, state in self._pairs.items():
            if state.pending:
                out.extend(self._close(pair, state, final=True))
        return out

    def _collect(self, state: _PairState) -> _Cycle:
        columns: dict[tuple[int, str], Column] = {}
        cells: dict[tuple[int, str], float | str] = {}
        raw_payloads: dict[int, bytes] = {}

        for rf in state.pending:
            command = rf.frame.command_id
            if rf.spec is not None:
                for d in rf.spec.fields:
                    col = Column(command, d.label, d.unit_label, d.precision)
                    columns.setdefault(col.key, col)
                for f in rf.fields:
                    cells[(command, f.label)] = f.scaled_value
            else:
                col = Column(command, f"0x{command:04X} payload", raw=True)
                columns.setdefault(col.key, col)
                cells[col.key] = rf.frame.payload.hex()
                raw_payloads[command] = rf.frame.payload

        complete = self.boundary.is_complete(
            [rf.frame.command_id for rf in state.pending])
        cycle = _Cycle(state.cycle, columns, cells, raw_payloads,
                       trusted=complete and state.opened_at == self._rejections)
        state.cycle += 1
        state.pending = []
        state.opened_at = self._rejections
        return cycle

    def _close(self, pair: tuple[int, int], state: _PairState,
               final: bool = False) -> list[Record]:
        cycle = self._collect(state)
        if state.schema is not None:
            return self._records(pair, state.schema, [cycle])

        state.held.append(cycle)
        if not (cycle.trusted or final):
            logger.debug("0x%04X->0x%04X: cycle %d incomplete or damaged, "
                         "still discovering", pair[0], pair[1], cycle.number)
            return []
        schema = self._freeze(pair, state, cycle if cycle.trusted else None)
        held, state.held = state.held, []
        return self._records(pair, schema, held)

    def _freeze(self, pair: tuple[int, int], state: _PairState,
                lead: _Cycle | None) -> Schema:
        """Fix the column order: the clean cycle's columns first, then
        whatever only the held-back cycles carried."""
        columns: dict[tuple[int, str], Column] = {}
        if lead is not None:
            columns.update(lead.columns)
        for held in state.held:
            for key, col in held.columns.items():
                columns.setdefault(key, col)
        schema = Schema(pair, tuple(columns.values()))
        state.schema = schema
        state.phase = Phase.FROZEN
        logger.debug("schema for 0x%04X->0x%04X frozen with %d columns",
                     pair[0], pair[1], len(schema.columns))
        return schema

    def _records(self, pair: tuple[int, int], schema: Schema,
                 cycles: list[_Cycle]) -> list[Record]:
        index = schema.index()
        out: list[Record] = []
        for cycle in cycles:
            late = [k for k in cycle.cells if k not in index]
            if late:
                names = ", ".join(label for _, label in late)
                if self.late_fields == "error":
                    raise SchemaFrozenError(
                        f"0x{pair[0]:04X}->0x{pair[1]:04X}: fields {names} "
                        f"not in frozen schema")
                logger.warning("0x%04X->0x%04X: dropping fields not in frozen "
                               "schema: %s", pair[0], pair[1], names)

            timestamp = self.start + self.interval * cycle.number
            if self.ts_min is not None and timestamp < self.ts_min:
                continue
            if self.ts_max is not None and timestamp > self.ts_max:
                continue
            values = [cycle.cells.get(c.key) for c in schema.columns]
            out.append(Record(schema, timestamp, cycle.number, values,
                              cycle.raw_payloads))
        return out
