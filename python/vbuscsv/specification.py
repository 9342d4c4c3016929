"""Field layout table and frame payload resolution."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from fractions import Fraction
from pathlib import Path
from typing import Any, Iterator

from .errors import SpecificationError
from .framing import Frame

MAX_PRECISION = 6

# Display / datalogger address all controllers report to
DFA = 0x0010


@dataclass(frozen=True)
class FieldDescriptor:
    label: str
    byte_offset: int
    byte_width: int
    is_signed: bool = False
    scale_factor: Fraction = Fraction(1)
    unit_label: str = ""

    def __post_init__(self):
        if not 1 <= self.byte_width <= 4:
            raise SpecificationError(
                f"{self.label}: byte_width {self.byte_width} not in 1..4")
        if self.byte_offset < 0:
            raise SpecificationError(f"{self.label}: negative byte_offset")
        if not isinstance(self.scale_factor, Fraction):
            object.__setattr__(self, "scale_factor", _fraction(self.scale_factor))

    @property
    def precision(self) -> int:
        """Decimals needed to print one scale step exactly (capped)."""
        for digits in range(MAX_PRECISION + 1):
            if (self.scale_factor * 10 ** digits).denominator == 1:
                return digits
        return MAX_PRECISION

    @property
    def end(self) -> int:
        return self.byte_offset + self.byte_width


@dataclass(frozen=True)
class PacketSpec:
    source_id: int
    destination_id: int
    command_id: int
    name: str
    fields: tuple[FieldDescriptor, ...] = ()

    @property
    def key(self) -> tuple[int, int, int]:
        return self.source_id, self.destination_id, self.command_id


@dataclass(frozen=True)
class ResolvedField:
    label: str
    raw_value: int
    scaled_value: float
    unit_label: str
    descriptor: FieldDescriptor


@dataclass
class ResolvedFrame:
    frame: Frame
    spec: PacketSpec | None
    fields: list[ResolvedField] = field(default_factory=list)

    @property
    def recognized(self) -> bool:
        return self.spec is not None


def _fraction(value: Any) -> Fraction:
    if isinstance(value, float):
        return Fraction(str(value))
    try:
        return Fraction(value)
    except (TypeError, ValueError, ZeroDivisionError) as exc:
        raise SpecificationError(f"bad scale factor {value!r}") from exc


def _parse_id(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 0)
    return int(value)


class SpecificationTable:
    """Read-only lookup of packet layouts keyed by (source, destination, command)."""

    def __init__(self, packets: list[PacketSpec] | None = None):
        self._packets: dict[tuple[int, int, int], PacketSpec] = {}
        for p in packets or []:
            if p.key in self._packets:
                raise SpecificationError(
                    "duplicate packet 0x%04X->0x%04X cmd 0x%04X" % p.key)
            self._packets[p.key] = p

    def __len__(self) -> int:
        return len(self._packets)

    def __iter__(self) -> Iterator[PacketSpec]:
        return iter(self._packets.values())

    def lookup(self, source_id: int, destination_id: int,
               command_id: int) -> PacketSpec | None:
        return self._packets.get((source_id, destination_id, command_id))

    def resolve(self, frame: Frame) -> ResolvedFrame:
        """Extract every described field that fits inside the payload.

        Descriptors reaching past the payload end are skipped: older
        firmware sends shorter payloads than the table describes.
        """
        spec = self.lookup(frame.source_id, frame.destination_id,
                           frame.command_id)
        if spec is None:
            return ResolvedFrame(frame, None)

        payload = frame.payload
        fields: list[ResolvedField] = []
        for d in spec.fields:
            if d.end > len(payload):
                continue
            raw = int.from_bytes(payload[d.byte_offset:d.end], "little",
                                 signed=d.is_signed)
            fields.append(ResolvedField(
                d.label, raw, float(raw * d.scale_factor), d.unit_label, d))
        return ResolvedFrame(frame, spec, fields)

    # ------------------------------------------------------------------
    # JSON representation (substitute tables)
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SpecificationTable:
        packets: list[PacketSpec] = []
        try:
            for p in data["packets"]:
                fields = tuple(
                    FieldDescriptor(
                        label=f["label"],
                        byte_offset=int(f["offset"]),
                        byte_width=int(f["width"]),
                        is_signed=bool(f.get("signed", False)),
                        scale_factor=_fraction(f.get("scale", 1)),
                        unit_label=f.get("unit", ""),
                    )
                    for f in p.get("fields", [])
                )
                packets.append(PacketSpec(
                    _parse_id(p["source"]), _parse_id(p["destination"]),
                    _parse_id(p["command"]), p.get("name", ""), fields))
        except SpecificationError:
            raise
        except (KeyError, TypeError, ValueError) as exc:
            raise SpecificationError(f"invalid specification table: {exc}") from exc
        return cls(packets)

    @classmethod
    def load(cls, path: str | Path) -> SpecificationTable:
        with open(path, encoding="utf-8") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as exc:
                raise SpecificationError(f"{path}: {exc}") from exc
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        return {"packets": [
            {
                "source": f"0x{p.source_id:04X}",
                "destination": f"0x{p.destination_id:04X}",
                "command": f"0x{p.command_id:04X}",
                "name": p.name,
                "fields": [
                    {
                        "label": d.label,
                        "offset": d.byte_offset,
                        "width": d.byte_width,
                        "signed": d.is_signed,
                        "scale": str(d.scale_factor),
                        "unit": d.unit_label,
                    }
                    for d in p.fields
                ],
            }
            for p in self
        ]}


# ---------------------------------------------------------------------------
# Built-in table
# ---------------------------------------------------------------------------

def _temp(label: str, offset: int) -> FieldDescriptor:
    return FieldDescriptor(label, offset, 2, True, Fraction(1, 10), "°C")


def _heat_quantity(offset: int) -> tuple[FieldDescriptor, ...]:
    return (
        FieldDescriptor("Heat quantity", offset, 2, False, Fraction(1), "Wh"),
        FieldDescriptor("Heat quantity 1000", offset + 2, 2, False, Fraction(1000), "Wh"),
        FieldDescriptor("Heat quantity 1000000", offset + 4, 2, False, Fraction(1000000), "Wh"),
    )


BUILTIN_PACKETS = [
    PacketSpec(0x4221, DFA, 0x0100, "DeltaSol BS Plus", (
        _temp("Temperature sensor 1", 0),
        _temp("Temperature sensor 2", 2),
        _temp("Temperature sensor 3", 4),
        _temp("Temperature sensor 4", 6),
        FieldDescriptor("Pump speed relay 1", 8, 1, False, Fraction(1), "%"),
        FieldDescriptor("Pump speed relay 2", 9, 1, False, Fraction(1), "%"),
        FieldDescriptor("Relay mask", 10, 1),
        FieldDescriptor("Error mask", 11, 1),
        FieldDescriptor("System time", 12, 2, False, Fraction(1), "min"),
        FieldDescriptor("Scheme", 14, 1),
        FieldDescriptor("Option flags", 15, 1),
        FieldDescriptor("Operating hours relay 1", 16, 2, False, Fraction(1), "h"),
        FieldDescriptor("Operating hours relay 2", 18, 2, False, Fraction(1), "h"),
        *_heat_quantity(20),
        FieldDescriptor("Version", 26, 2, False, Fraction(1, 100)),
    )),
    PacketSpec(0x4212, DFA, 0x0100, "DeltaSol C", (
        _temp("Temperature sensor 1", 0),
        _temp("Temperature sensor 2", 2),
        _temp("Temperature sensor 3", 4),
        _temp("Temperature sensor 4", 6),
        FieldDescriptor("Pump speed relay 1", 8, 1, False, Fraction(1), "%"),
        FieldDescriptor("Pump speed relay 2", 9, 1, False, Fraction(1), "%"),
        FieldDescriptor("Error mask", 10, 1),
        FieldDescriptor("Scheme", 11, 1),
        FieldDescriptor("Operating hours relay 1", 12, 2, False, Fraction(1), "h"),
        FieldDescriptor("Operating hours relay 2", 14, 2, False, Fraction(1), "h"),
        *_heat_quantity(16),
        FieldDescriptor("System time", 22, 2, False, Fraction(1), "min"),
    )),
    PacketSpec(0x4010, DFA, 0x0100, "WMZ heat quantity meter", (
        _temp("Temperature flow", 0),
        _temp("Temperature return", 2),
        FieldDescriptor("Flow rate", 4, 2, False, Fraction(1), "l/h"),
        *_heat_quantity(6),
    )),
]


def default_table() -> SpecificationTable:
    return SpecificationTable(BUILTIN_PACKETS)
